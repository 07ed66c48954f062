"""
Text-synthesis collaborators: turn an edit sketch into a full file, re-apply a
failed edit with a stronger model, and summarize earlier conversation turns.

The router and orchestrator only depend on the ``TextSynthesis`` interface;
``BedrockTextSynthesis`` is the default implementation.
"""

import json
import logging
import os
import re
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from bedrock_service import BedrockService, GenerationConfig
from config import synthesis_config, SynthesisConfig

logger = logging.getLogger(__name__)

_FENCE_LINE_RE = re.compile(r"^\s*`{3}[\w-]*\s*$")
_CLOSING_FENCE_RE = re.compile(r"^\s*`{3}\s*$")
_DIFF_HEADER_RE = re.compile(r"^\s*[-+]{3}\s*$")
_TRAILING_FENCE_RE = re.compile(r"\s*`{3}\s*$")


class CollaboratorError(Exception):
    """The text-synthesis service failed or returned nothing usable."""


def strip_code_fences(raw: str) -> str:
    """Remove markdown fences and bare ---/+++ diff header lines around file content."""
    lines = (raw or "").strip().splitlines()
    start, end = 0, len(lines)
    while start < end and _FENCE_LINE_RE.match(lines[start]):
        start += 1
    while start < end and _DIFF_HEADER_RE.match(lines[start]):
        start += 1
    while end > start and _CLOSING_FENCE_RE.match(lines[end - 1]):
        end -= 1
    while end > start and _DIFF_HEADER_RE.match(lines[end - 1]):
        end -= 1
    text = "\n".join(lines[start:end])
    return _TRAILING_FENCE_RE.sub("", text).strip()


def build_transcript(messages: List[Dict[str, str]], config: SynthesisConfig = synthesis_config) -> str:
    """Newest-first packing of recent messages into a bounded User/Assistant transcript."""
    recent = messages[-config.summary_max_messages:]
    lines: List[str] = []
    total = 0
    for msg in reversed(recent):
        if total >= config.summary_max_total_chars:
            break
        content = (msg.get("content") or "").strip()[: config.summary_max_message_chars]
        role = "User" if msg.get("role") == "user" else "Assistant"
        line = f"{role}: {content}"
        if total + len(line) > config.summary_max_total_chars:
            lines.insert(0, line[: config.summary_max_total_chars - total])
            break
        lines.insert(0, line)
        total += len(line)
    return "\n\n".join(lines)


def _pretty_package_json(target_file: str, content: str) -> str:
    if os.path.basename(target_file).lower() != "package.json":
        return content
    try:
        return json.dumps(json.loads(content), indent=2)
    except ValueError:
        return content


class TextSynthesis(ABC):
    """Interface of the external text-synthesis service."""

    @abstractmethod
    def apply_edit(self, current_content: str, target_file: str, instructions: str, edit_sketch: str) -> str:
        """Return the complete new file content after applying the sketch."""

    @abstractmethod
    def reapply_edit(self, current_content: str, target_file: str, instructions: str, edit_sketch: str) -> str:
        """Like apply_edit, with a stronger model, after a bad first application."""

    @abstractmethod
    def summarize(self, messages: List[Dict[str, str]]) -> str:
        """Short summary of earlier turns, or "" when there is nothing to summarize."""


APPLY_NEW_FILE_PROMPT = """You are an apply model: you take an edit sketch and produce the final file content.

FILE (new file): {target_file}

INSTRUCTION: {instructions}

EDIT SKETCH (this describes the full content of the new file):
```
{sketch}
```

TASK: Output the COMPLETE file content for this new file. If the sketch uses "// ... existing code ..." ignore those (there is no existing code). Output only the file content."""

APPLY_EXISTING_FILE_PROMPT = """You are an apply model: you take an edit sketch (with "// ... existing code ..." meaning "copy the existing file content here") and produce the complete file after applying the edit.

FILE: {target_file}

INSTRUCTION: {instructions}

EDIT SKETCH:
```
{sketch}
```

CURRENT FILE CONTENT:
```
{current}
```

TASK: Output the COMPLETE new file content. Replace each "... existing code ..." marker (in any comment style) with the corresponding lines from the current file. Preserve formatting and style. Output only the file content."""

REAPPLY_PROMPT = """You are a precise code editor. An edit was applied incorrectly by a simpler model. Apply the SAME intended edit correctly.

FILE: {target_file}

INSTRUCTIONS FROM THE ORIGINAL EDIT:
{instructions}

ORIGINAL EDIT SKETCH ("// ... existing code ..." means unchanged code):
```
{sketch}
```

CURRENT FILE CONTENT:
```
{current}
```

TASK: Output the COMPLETE new file content. Preserve formatting and style. Output only the file content."""

SUMMARIZE_PROMPT = """You are a conversation summarizer. Given the chat transcript between User and Assistant below, write a short summary (2-5 sentences) covering what the user asked for, which tool actions the assistant actually took, and the current project.

Write in third person and be factual. Do not claim a request was completed unless the transcript shows a tool call that did it.

Transcript:
---
{transcript}
---

Summary:"""


class BedrockTextSynthesis(TextSynthesis):
    """TextSynthesis backed by Amazon Bedrock models."""

    def __init__(self, service: Optional[BedrockService] = None, config: SynthesisConfig = synthesis_config):
        self.config = config
        self._service = service

    @property
    def service(self) -> BedrockService:
        if self._service is None:
            self._service = BedrockService(model_id=self.config.apply_model)
        return self._service

    def _generate(self, prompt: str, model_id: str, max_tokens: Optional[int] = None,
                  temperature: Optional[float] = None) -> str:
        gen_config = GenerationConfig(
            max_tokens=max_tokens or self.config.max_tokens,
            temperature=temperature if temperature is not None else self.config.temperature,
        )
        text = self.service.generate_text(prompt, model_id=model_id, config=gen_config).content.strip()
        if not text:
            raise CollaboratorError("Model returned empty content.")
        return text

    def apply_edit(self, current_content: str, target_file: str, instructions: str, edit_sketch: str) -> str:
        sketch = strip_code_fences(edit_sketch)
        if current_content.strip():
            prompt = APPLY_EXISTING_FILE_PROMPT.format(
                target_file=target_file, instructions=instructions, sketch=sketch, current=current_content)
        else:
            prompt = APPLY_NEW_FILE_PROMPT.format(
                target_file=target_file, instructions=instructions, sketch=sketch)
        result = strip_code_fences(self._generate(prompt, self.config.apply_model, temperature=0.1))
        return _pretty_package_json(target_file, result)

    def reapply_edit(self, current_content: str, target_file: str, instructions: str, edit_sketch: str) -> str:
        prompt = REAPPLY_PROMPT.format(
            target_file=target_file, instructions=instructions, sketch=edit_sketch, current=current_content)
        result = strip_code_fences(self._generate(prompt, self.config.reapply_model, temperature=0.1))
        return _pretty_package_json(target_file, result)

    def summarize(self, messages: List[Dict[str, str]]) -> str:
        transcript = build_transcript(messages, self.config)
        if not transcript:
            return ""
        prompt = SUMMARIZE_PROMPT.format(transcript=transcript)
        return self._generate(prompt, self.config.summarize_model, max_tokens=256, temperature=0.2)[:1500]
