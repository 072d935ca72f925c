"""AI collaborator: code review, error analysis, autofix and generation.

The model behind it is treated as unreliable. Every reply is parsed
defensively; anything malformed degrades to an empty suggestion list, the
original code (autofix) or the raw reply (generate). Only a missing
configuration or a failed call raises ReviewError, and nothing here is ever
on the compile pipeline's path.
"""

from __future__ import annotations

import json
import re
from typing import Any, Protocol

from pydantic import ValidationError

from compile_sandbox import constants
from compile_sandbox._imports import require_genai
from compile_sandbox._logging import get_logger
from compile_sandbox.exceptions import ReviewError
from compile_sandbox.models import GeneratedCode, Suggestion

logger = get_logger(__name__)

_FENCE_RE = re.compile(r"^\s*```[A-Za-z0-9_+-]*\s*\n(?P<body>.*?)\n?```\s*$", re.DOTALL)

_SUGGESTION_SCHEMA = """{
  "suggestions": [
    {
      "type": "ERROR|WARNING|STYLE|PERFORMANCE|SECURITY",
      "message": "Clear description of the issue or suggestion",
      "line": line_number_or_null,
      "fix": "Specific fix suggestion if applicable",
      "explanation": "Why this matters"
    }
  ]
}"""

REVIEW_SYSTEM = (
    "You are an expert C++ developer and code reviewer. "
    "Provide accurate, actionable feedback in the exact JSON format requested."
)
ANALYZE_SYSTEM = (
    "You are an expert C++ developer and compiler error analyst. "
    "Provide accurate, actionable feedback in the exact JSON format requested."
)
AUTOFIX_SYSTEM = (
    "You are an expert C++ developer. Fix the provided code and return it in the exact JSON format "
    "requested. Focus on making the code compile and run correctly."
)
GENERATE_SYSTEM = (
    "You are an expert C++ developer. Generate high-quality, compilable C++ code based on the "
    "user's request. Return the code in the exact JSON format requested."
)


class SuggestionBackend(Protocol):
    """Anything that turns a system instruction plus a prompt into reply text."""

    async def generate(self, system_instruction: str, prompt: str) -> str: ...


class GeminiBackend:
    """google-generativeai backend. The SDK is imported on first use."""

    def __init__(self, api_key: str, model: str = constants.DEFAULT_GEMINI_MODEL) -> None:
        if not api_key:
            raise ReviewError("Gemini API key not configured")
        self._api_key = api_key
        self.model = model
        self._genai: Any = None

    def _sdk(self) -> Any:
        if self._genai is None:
            genai = require_genai()
            genai.configure(api_key=self._api_key)
            self._genai = genai
        return self._genai

    async def generate(self, system_instruction: str, prompt: str) -> str:
        genai = self._sdk()
        model = genai.GenerativeModel(self.model, system_instruction=system_instruction)
        try:
            response = await model.generate_content_async(prompt)
            return response.text
        except Exception as e:
            logger.warning(
                "Gemini request failed",
                extra={"model": self.model, "error": str(e), "error_type": type(e).__name__},
            )
            if "model" in str(e).lower():
                raise ReviewError(
                    f"Model '{self.model}' is not available. Check your Gemini API access or use a different model.",
                    context={"model": self.model},
                ) from e
            raise ReviewError(f"AI request failed: {e}", context={"model": self.model}) from e


def strip_code_fence(text: str) -> str:
    """Remove one surrounding markdown code fence, if present."""
    match = _FENCE_RE.match(text)
    return match.group("body") if match else text.strip()


def _load_json_object(reply: str) -> dict[str, Any] | None:
    try:
        data = json.loads(strip_code_fence(reply))
    except (json.JSONDecodeError, TypeError):
        return None
    return data if isinstance(data, dict) else None


def parse_suggestions(reply: str) -> list[Suggestion]:
    """Parse a ``{"suggestions": [...]}`` reply. Invalid entries are skipped."""
    data = _load_json_object(reply)
    if data is None:
        logger.warning("Unparsable AI reply, returning no suggestions", extra={"reply_chars": len(reply or "")})
        return []
    raw = data.get("suggestions")
    if not isinstance(raw, list):
        return []

    suggestions: list[Suggestion] = []
    for item in raw:
        try:
            suggestions.append(Suggestion.model_validate(item))
        except ValidationError:
            logger.debug("Skipping malformed suggestion", extra={"item": repr(item)[:200]})
    return suggestions


def parse_fixed_code(reply: str, original: str) -> str:
    """Extract ``fixedCode``; fall back to the original code."""
    data = _load_json_object(reply)
    if data is None:
        return original
    fixed = data.get("fixedCode")
    return fixed if isinstance(fixed, str) and fixed.strip() else original


def parse_generated(reply: str) -> GeneratedCode:
    """Extract ``code``/``explanation``; fall back to the raw reply as code."""
    data = _load_json_object(reply)
    if data is None:
        return GeneratedCode(code=strip_code_fence(reply or ""), explanation="Generated code (parsing failed)")
    code = data.get("code")
    explanation = data.get("explanation")
    return GeneratedCode(
        code=code if isinstance(code, str) else "",
        explanation=explanation if isinstance(explanation, str) else "",
    )


class ReviewClient:
    """Prompt construction and reply parsing on top of a SuggestionBackend.

    Backend failures (network, quota, bad model) raise ReviewError.
    Malformed replies never raise.
    """

    def __init__(self, backend: SuggestionBackend) -> None:
        self._backend = backend

    async def review(self, code: str) -> list[Suggestion]:
        prompt = (
            "Analyze the following C++ code and provide detailed suggestions for improvements, "
            "bug fixes, and best practices.\n\n"
            f"Code to review:\n```cpp\n{code}\n```\n\n"
            f"Respond in the following JSON format:\n{_SUGGESTION_SCHEMA}\n\n"
            "Focus on compilation errors, missing includes, memory management, performance, "
            "style, potential bugs and security issues. Be specific and actionable."
        )
        return parse_suggestions(await self._backend.generate(REVIEW_SYSTEM, prompt))

    async def analyze_errors(self, code: str, compilation_error: str) -> list[Suggestion]:
        prompt = (
            "Analyze the following compilation error and provide specific suggestions to fix it.\n\n"
            f"Code that failed to compile:\n```cpp\n{code}\n```\n\n"
            f"Compilation error:\n```\n{compilation_error}\n```\n\n"
            f"Respond in the following JSON format:\n{_SUGGESTION_SCHEMA}\n\n"
            "Identify the root cause, give a concrete fix and explain why the error occurred."
        )
        return parse_suggestions(await self._backend.generate(ANALYZE_SYSTEM, prompt))

    async def autofix(self, code: str) -> str:
        prompt = (
            "Fix the following C++ code by addressing compilation errors, syntax issues and "
            "common problems.\n\n"
            f"Code to fix:\n```cpp\n{code}\n```\n\n"
            'Return the fixed code in the following JSON format:\n{\n  "fixedCode": "the complete fixed C++ code"\n}'
        )
        return parse_fixed_code(await self._backend.generate(AUTOFIX_SYSTEM, prompt), code)

    async def generate(self, request: str, context: str | None = None) -> GeneratedCode:
        context_block = f"Context/Existing Code:\n```cpp\n{context}\n```\n\n" if context else ""
        prompt = (
            "Generate C++ code based on the following request.\n\n"
            f"{context_block}Request: {request}\n\n"
            "Return the result in the following JSON format:\n"
            '{\n  "code": "the complete C++ code",\n  "explanation": "brief explanation of what the code does"\n}\n\n'
            "Include the necessary headers and follow modern C++ practice."
        )
        return parse_generated(await self._backend.generate(GENERATE_SYSTEM, prompt))
