"""Translation backends for SelectLingo (Ollama HTTP API and the Claude CLI)."""

from __future__ import annotations

import json
import logging
import re
import shutil
import socket
import subprocess
import time
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Optional, Protocol, Union

from language_detect import Language
from settings_store import AppSettings


class TranslationError(RuntimeError):
    """Raised when the translation service cannot complete a request."""


class TranslationTimeout(TranslationError):
    """Raised when a provider does not answer within its timeout."""


class ModelTooSmall(TranslationError):
    """Raised when the configured model is too small for summaries and replies."""


@dataclass(frozen=True)
class TranslationRequest:
    text: str
    source_lang: Language
    target_lang: Language


@dataclass(frozen=True)
class TranslationResult:
    translated_text: str
    source_lang: Language
    target_lang: Language
    duration_ms: int


@dataclass(frozen=True)
class SummarizeResult:
    summary: str
    original_length: int
    summary_length: int
    duration_ms: int


@dataclass(frozen=True)
class ReplyResult:
    reply: str
    language: Language
    duration_ms: int


@dataclass(frozen=True)
class ProviderAvailable:
    status: str = "available"


@dataclass(frozen=True)
class ProviderUnavailable:
    reason: str
    status: str = "unavailable"


ProviderStatus = Union[ProviderAvailable, ProviderUnavailable]


class TranslationProvider(Protocol):  # pragma: no cover - protocol is for type checking only
    def translate(self, request: TranslationRequest) -> TranslationResult:
        """Translate the request, blocking until the backend answers."""

    def check_status(self) -> ProviderStatus:
        """Report whether the backend can currently be reached."""


_ENGLISH_NAMES = {
    Language.EN: "English",
    Language.JA: "Japanese",
}

_QUOTES = ('"', "「", "」", "『", "』", "'")

_PREFIXES_TO_REMOVE = (
    "translation:",
    "translated text:",
    "翻訳:",
    "翻訳結果:",
    "訳文:",
    "訳:",
    "english:",
    "japanese:",
    "日本語:",
    "英語:",
    "here is the translation:",
    "the translation is:",
)

PLAMO_OPTIONS = {
    "temperature": 0.1,
    "repeat_penalty": 1.4,
    "num_predict": 4096,
}

GENERAL_OPTIONS = {
    "temperature": 0.2,
    "repeat_penalty": 1.1,
    "num_predict": 4096,
    "top_p": 0.9,
}

OLLAMA_NOT_RUNNING = "Ollama is not running. Start Ollama and try again."

MIN_MODEL_SIZE_FOR_WRITING_TOOLS = 7

_MODEL_SIZE_PATTERN = re.compile(r"\D*(\d+)(b?)")

_SUMMARY_SYSTEM_MESSAGES = {
    Language.JA: "あなたは日本語の要約専門家です。必ず日本語でのみ応答してください。絶対に英語に翻訳しないでください。",
    Language.EN: "You are an English summarization expert. You MUST respond in English only. DO NOT translate to Japanese.",
}

_REPLY_SYSTEM_MESSAGES = {
    Language.JA: "あなたはビジネスメールの返信作成専門家です。必ず日本語でのみ返信を作成してください。",
    Language.EN: "You are a business email reply expert. You MUST write the reply in English only.",
}

logger = logging.getLogger("selectlingo.provider")


def is_translation_model(model: str) -> bool:
    """Return ``True`` for translation-specialised models such as PLaMo-2-Translate."""

    lowered = model.lower()
    return "plamo" in lowered and "translate" in lowered


def build_api_options(model: str) -> dict:
    return dict(PLAMO_OPTIONS if is_translation_model(model) else GENERAL_OPTIONS)


def build_translation_prompt(text: str, source_lang: Language, target_lang: Language) -> str:
    if (source_lang, target_lang) == (Language.JA, Language.EN):
        return f"Translate the following Japanese text to English:\n{text}"
    if (source_lang, target_lang) == (Language.EN, Language.JA):
        return f"以下の英文を日本語に翻訳してください:\n{text}"
    return (
        f"Translate from {_ENGLISH_NAMES[source_lang]} to "
        f"{_ENGLISH_NAMES[target_lang]}:\n{text}"
    )


def build_summarize_prompt(text: str, language: Language) -> str:
    if language is Language.JA:
        return f"以下の日本語テキストを3文以内で日本語で要約してください。要約のみを出力してください。\n\n{text}"
    return (
        "Summarize the following English text in 3 sentences or less in English. "
        f"Output only the summary.\n\n{text}"
    )


def build_reply_prompt(text: str, language: Language) -> str:
    if language is Language.JA:
        return (
            "以下の日本語メッセージに対して、丁寧なビジネスメールの返信を日本語で書いてください。"
            f"返信のみを出力してください。\n\n{text}"
        )
    return (
        "Write a polite business email reply to the following English message in English. "
        f"Output only the reply.\n\n{text}"
    )


def extract_model_size(model: str) -> Optional[int]:
    """Return the parameter count in billions encoded in a model tag, e.g. 7 for ``qwen2.5:7b``."""

    lowered = model.lower()
    for separator in (":", "-", "_"):
        _head, found, tail = lowered.partition(separator)
        if not found:
            continue
        match = _MODEL_SIZE_PATTERN.match(tail)
        if match and match.group(2):
            return int(match.group(1))
    return None


def validate_model_for_writing_tools(model: str) -> None:
    """Raise :class:`ModelTooSmall` when ``model`` is known to be under 7B.

    Models without a recognisable size are allowed.
    """

    size = extract_model_size(model)
    if size is not None and size < MIN_MODEL_SIZE_FOR_WRITING_TOOLS:
        raise ModelTooSmall(
            f"Model {model} is too small for summaries and replies: {size}B "
            f"(at least {MIN_MODEL_SIZE_FOR_WRITING_TOOLS}B required)"
        )


def supports_writing_tools(provider: object) -> bool:
    return all(callable(getattr(provider, name, None)) for name in ("summarize", "generate_reply"))


def clean_translation_result(text: str, source_text: str) -> str:
    """Strip the quoting, labels and echoed source text LLMs like to add."""

    result = text.strip()

    for quote in _QUOTES:
        if result.startswith(quote):
            result = result.lstrip(quote).strip()
        if result.endswith(quote):
            result = result.rstrip(quote).strip()

    lowered = result.lower()
    for prefix in _PREFIXES_TO_REMOVE:
        if lowered.startswith(prefix):
            result = result[len(prefix):].strip()
            break

    first, separator, rest = result.partition("\n\n")
    if separator and (source_text in first or first in source_text):
        result = rest.strip()

    if source_text and result.startswith(source_text):
        result = result[len(source_text):].strip()

    return result


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


class OllamaClient:
    """Client for a local Ollama server's chat API."""

    def __init__(self, endpoint: str, model: str, timeout: float = 60.0) -> None:
        self.endpoint = endpoint.rstrip("/")
        self.model = model
        self.timeout = timeout

    def translate(self, request: TranslationRequest) -> TranslationResult:
        if not request.text:
            raise TranslationError("Cannot translate empty text")

        started = time.perf_counter()
        prompt = build_translation_prompt(request.text, request.source_lang, request.target_lang)
        content = self._chat([{"role": "user", "content": prompt}])

        return TranslationResult(
            translated_text=clean_translation_result(content, request.text),
            source_lang=request.source_lang,
            target_lang=request.target_lang,
            duration_ms=_elapsed_ms(started),
        )

    def summarize(self, text: str, language: Language) -> SummarizeResult:
        """Summarise ``text`` in at most three sentences, written in ``language``."""

        if not text:
            raise TranslationError("Cannot summarize empty text")
        validate_model_for_writing_tools(self.model)

        started = time.perf_counter()
        content = self._chat(
            [
                {"role": "system", "content": _SUMMARY_SYSTEM_MESSAGES[language]},
                {"role": "user", "content": build_summarize_prompt(text, language)},
            ]
        )
        summary = clean_translation_result(content, text)
        return SummarizeResult(
            summary=summary,
            original_length=len(text),
            summary_length=len(summary),
            duration_ms=_elapsed_ms(started),
        )

    def generate_reply(self, text: str, language: Language, source_language: Language) -> ReplyResult:
        """Draft a polite business reply to ``text`` in ``language``.

        ``source_language`` is the language the message was originally
        written in; the reply itself is always in ``language``.
        """

        if not text:
            raise TranslationError("Cannot reply to empty text")
        validate_model_for_writing_tools(self.model)
        logger.debug("Drafting %s reply to a message originally in %s", language.value, source_language.value)

        started = time.perf_counter()
        content = self._chat(
            [
                {"role": "system", "content": _REPLY_SYSTEM_MESSAGES[language]},
                {"role": "user", "content": build_reply_prompt(text, language)},
            ]
        )
        return ReplyResult(
            reply=clean_translation_result(content, text),
            language=language,
            duration_ms=_elapsed_ms(started),
        )

    def preload(self) -> None:
        """Load the model into memory so the first translation starts quickly."""

        self._post_chat(
            {
                "model": self.model,
                "messages": [{"role": "user", "content": "hi"}],
                "stream": False,
                "keep_alive": "10m",
            },
            timeout=self.timeout,
        )

    def check_status(self) -> ProviderStatus:
        request = urllib.request.Request(f"{self.endpoint}/api/tags")
        try:
            with urllib.request.urlopen(request, timeout=5.0) as response:
                response.read()
        except urllib.error.HTTPError as exc:
            return ProviderUnavailable(f"HTTP error: {exc.code}")
        except (socket.timeout, TimeoutError):
            return ProviderUnavailable("Connection timed out")
        except urllib.error.URLError as exc:
            if isinstance(exc.reason, ConnectionRefusedError):
                return ProviderUnavailable("Ollama is not running")
            return ProviderUnavailable(str(exc.reason))
        return ProviderAvailable()

    def _chat(self, messages: list) -> str:
        payload = {
            "model": self.model,
            "messages": messages,
            "stream": False,
            "options": build_api_options(self.model),
            "keep_alive": "10m",
        }
        data = self._post_chat(payload, timeout=self.timeout)

        try:
            return data["message"]["content"]
        except (KeyError, TypeError) as exc:
            raise TranslationError("Unexpected response structure from Ollama") from exc

    def _post_chat(self, payload: dict, *, timeout: float) -> dict:
        request = urllib.request.Request(
            f"{self.endpoint}/api/chat",
            data=json.dumps(payload).encode("utf-8"),
            headers={"Content-Type": "application/json"},
            method="POST",
        )

        try:
            with urllib.request.urlopen(request, timeout=timeout) as response:
                body = response.read()
        except urllib.error.HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="replace")
            raise TranslationError(f"API error: status {exc.code}: {detail}") from exc
        except (socket.timeout, TimeoutError) as exc:
            raise TranslationTimeout("Translation request timed out") from exc
        except urllib.error.URLError as exc:
            if isinstance(exc.reason, (socket.timeout, TimeoutError)):
                raise TranslationTimeout("Translation request timed out") from exc
            if isinstance(exc.reason, ConnectionRefusedError):
                raise TranslationError(OLLAMA_NOT_RUNNING) from exc
            raise TranslationError(f"Connection failed: {exc.reason}") from exc

        try:
            return json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise TranslationError("Invalid response from Ollama") from exc


class ClaudeCliClient:
    """Translate by shelling out to the ``claude`` command line tool."""

    def __init__(self, cli_path: Optional[str] = None, timeout: float = 30.0) -> None:
        self.cli_path = cli_path or "claude"
        self.timeout = timeout

    def translate(self, request: TranslationRequest) -> TranslationResult:
        if not request.text:
            raise TranslationError("Cannot translate empty text")

        started = time.perf_counter()
        system_prompt = (
            "You are a professional translator. Translate the following text from "
            f"{_ENGLISH_NAMES[request.source_lang]} to {_ENGLISH_NAMES[request.target_lang]} "
            "while preserving meaning, tone, and context."
        )
        command = [
            self.cli_path,
            "-p",
            "--system-prompt",
            system_prompt,
            "--output-format",
            "json",
            request.text,
        ]

        try:
            completed = subprocess.run(
                command,
                capture_output=True,
                timeout=self.timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            raise TranslationTimeout("Claude CLI timed out") from exc
        except OSError as exc:
            raise TranslationError(f"Failed to run Claude CLI: {exc}") from exc

        if completed.returncode != 0:
            stderr = completed.stderr.decode("utf-8", errors="replace").strip()
            raise TranslationError(
                f"Claude CLI exited with code {completed.returncode}: {stderr}"
            )

        try:
            data = json.loads(completed.stdout.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise TranslationError("Failed to parse Claude CLI output") from exc

        output = data.get("output", data.get("result")) if isinstance(data, dict) else None
        if not isinstance(output, str):
            raise TranslationError("Claude CLI output is missing the translated text")

        return TranslationResult(
            translated_text=output.strip(),
            source_lang=request.source_lang,
            target_lang=request.target_lang,
            duration_ms=_elapsed_ms(started),
        )

    def check_status(self) -> ProviderStatus:
        if shutil.which(self.cli_path) is None:
            return ProviderUnavailable(f"Claude CLI not found: {self.cli_path}")
        return ProviderAvailable()


PROVIDER_NAMES = ("ollama", "claude-cli")


def create_provider(settings: AppSettings) -> TranslationProvider:
    """Build the provider selected by ``settings.provider``."""

    if settings.provider == "ollama":
        return OllamaClient(settings.ollama_endpoint, settings.ollama_model)
    if settings.provider == "claude-cli":
        return ClaudeCliClient(settings.claude_cli_path)
    raise TranslationError(f"Unknown translation provider: {settings.provider!r}")
