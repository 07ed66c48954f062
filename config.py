"""
Configuration module for Agent Bridge.
Handles environment variables, agent CLI settings and text-synthesis model settings.
"""

import os
import sys
from dataclasses import dataclass
from typing import Optional, Tuple
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _env_flag(name: str, default: str = "true") -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


def _default_model() -> str:
    if os.getenv("AGENT_MODEL"):
        return os.getenv("AGENT_MODEL", "")
    if os.getenv("GEMINI_API_KEY"):
        return "google/gemini-2.0-flash"
    return "opencode/minimax-m2.5-free"


def _default_use_pty() -> bool:
    if sys.platform == "win32":
        return False
    # Either name disables it; OPENCODE_USE_PTY is what the agent CLI docs mention.
    if os.getenv("OPENCODE_USE_PTY", "1") == "0":
        return False
    return _env_flag("AGENT_USE_PTY", "true")


@dataclass
class AWSConfig:
    """AWS-specific configuration"""
    region: str = os.getenv("AWS_REGION", "us-east-1")
    access_key_id: str = os.getenv("AWS_ACCESS_KEY_ID", "")
    secret_access_key: str = os.getenv("AWS_SECRET_ACCESS_KEY", "")
    session_token: str = os.getenv("AWS_SESSION_TOKEN", "")
    profile_name: str = os.getenv("AWS_PROFILE", "")

    def has_explicit_credentials(self) -> bool:
        return bool(self.access_key_id and self.secret_access_key)

    def has_session_token(self) -> bool:
        return bool(self.session_token)

    def has_profile(self) -> bool:
        return bool(self.profile_name)


@dataclass
class SynthesisConfig:
    """Models used by the edit-apply and summarize collaborators"""
    apply_model: str = os.getenv("APPLY_MODEL_ID", "us.anthropic.claude-haiku-4-5-20251001-v1:0")
    reapply_model: str = os.getenv("REAPPLY_MODEL_ID", "us.anthropic.claude-sonnet-4-20250514-v1:0")
    summarize_model: str = os.getenv("SUMMARIZE_MODEL_ID", "us.anthropic.claude-haiku-4-5-20251001-v1:0")
    max_tokens: int = int(os.getenv("SYNTHESIS_MAX_TOKENS", "16000"))
    temperature: Optional[float] = float(os.getenv("SYNTHESIS_TEMPERATURE", "0")) if os.getenv("SYNTHESIS_TEMPERATURE") else None
    # Conversation summary bounds
    summary_max_messages: int = 24
    summary_max_message_chars: int = 600
    summary_max_total_chars: int = 6000


@dataclass
class AppConfig:
    """Application-specific configuration"""
    title: str = "Agent Bridge"
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    host: str = os.getenv("HOST", "127.0.0.1")
    port: int = int(os.getenv("PORT", "3001"))
    workspace_root: str = os.getenv("WORKSPACE_ROOT", "./workspaces")
    # Agent CLI
    agent_path: str = os.getenv("OPENCODE_PATH", "opencode")
    # Directory holding the agent's custom tool stubs that call back into execute-tool
    tools_config_dir: str = os.getenv("OPENCODE_CONFIG_DIR", "")
    default_model: str = _default_model()
    use_json: bool = _env_flag("AGENT_USE_JSON", "true")
    use_pty: bool = _default_use_pty()
    pty_cols: int = 120
    pty_rows: int = 30
    trailing_buffer_chars: int = 4000
    # Run custom tool calls from the event stream in-process instead of waiting for the callback endpoint
    inline_tool_execution: bool = _env_flag("INLINE_TOOL_EXECUTION", "false")
    # Shell execution
    command_timeout: float = float(os.getenv("COMMAND_TIMEOUT", "3600"))
    dev_server_grace: float = float(os.getenv("DEV_SERVER_GRACE", "20"))
    lint_timeout: float = float(os.getenv("LINT_TIMEOUT", "60"))
    # Preview
    port_ttl: float = float(os.getenv("PREVIEW_PORT_TTL", "3600"))
    preview_probe_timeout: float = float(os.getenv("PREVIEW_PROBE_TIMEOUT", "15"))
    extra_reserved_ports: Tuple[int, ...] = (5173,)

    @property
    def reserved_ports(self) -> Tuple[int, ...]:
        """Ports the host application itself listens on; never offered as a preview."""
        ports = {3001, self.port, *self.extra_reserved_ports}
        return tuple(sorted(ports))

    @property
    def backend_url(self) -> str:
        return f"http://127.0.0.1:{self.port}"


# Create global config instances
aws_config = AWSConfig()
synthesis_config = SynthesisConfig()
app_config = AppConfig()


def get_credentials_info() -> str:
    if aws_config.has_profile():
        return f"Using AWS profile: {aws_config.profile_name}"
    elif aws_config.has_explicit_credentials():
        if aws_config.has_session_token():
            return "Using temporary credentials (with session token)"
        return "Using explicit credentials"
    return "Using default credential chain"
