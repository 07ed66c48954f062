"""
CLI entry point for the Agent Bridge web server.

Run:  python -m web [--port 3001] [--host 127.0.0.1] [--workspace-root DIR] [--agent PATH] [--no-pty]
"""

import argparse
import dataclasses
import logging
import os

from config import app_config, get_credentials_info


def main():
    import uvicorn

    parser = argparse.ArgumentParser(description="Agent Bridge: drive a coding-agent CLI from the browser")
    parser.add_argument("--port", type=int, default=app_config.port,
                        help=f"Server port (default: {app_config.port})")
    parser.add_argument("--host", default=app_config.host, help=f"Server host (default: {app_config.host})")
    parser.add_argument("--workspace-root", default=app_config.workspace_root,
                        help="Directory holding one subdirectory per workspace")
    parser.add_argument("--agent", default=None, help="Agent CLI command (default: opencode)")
    parser.add_argument("--no-pty", action="store_true", help="Run the agent as a plain subprocess")
    args = parser.parse_args()

    overrides = {
        "host": args.host,
        "port": args.port,
        "workspace_root": os.path.abspath(os.path.expanduser(args.workspace_root)),
    }
    if args.agent:
        overrides["agent_path"] = args.agent
    if args.no_pty:
        overrides["use_pty"] = False
    config = dataclasses.replace(app_config, **overrides)
    os.makedirs(config.workspace_root, exist_ok=True)

    level = getattr(logging, config.log_level.upper(), logging.INFO)
    # uvicorn's log_level only covers its own loggers
    for name in ("web", "agent", "tools", "backend", "collaborators", "bedrock_service"):
        log = logging.getLogger(name)
        log.setLevel(level)
        if not log.handlers:
            h = logging.StreamHandler()
            h.setLevel(level)
            h.setFormatter(logging.Formatter(f"%(asctime)s %(levelname)s [{name}] %(message)s"))
            log.addHandler(h)

    print(f"\n  Agent Bridge")
    print(f"  http://{config.host}:{config.port}")
    print(f"  Workspaces: {config.workspace_root}")
    print(f"  Agent: {config.agent_path} ({'pty' if config.use_pty else 'subprocess'})")
    print(f"  Bedrock: {get_credentials_info()}\n")

    from web import create_app
    uvicorn.run(create_app(config), host=config.host, port=config.port, log_level="warning")
