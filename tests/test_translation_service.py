import io
import json
import socket
import subprocess
import unittest
import unittest.mock as mock
import urllib.error

from language_detect import Language
from settings_store import AppSettings
from translation_service import (
    GENERAL_OPTIONS,
    OLLAMA_NOT_RUNNING,
    PLAMO_OPTIONS,
    MIN_MODEL_SIZE_FOR_WRITING_TOOLS,
    ClaudeCliClient,
    ModelTooSmall,
    OllamaClient,
    ProviderAvailable,
    ProviderUnavailable,
    TranslationError,
    TranslationRequest,
    TranslationTimeout,
    build_api_options,
    build_reply_prompt,
    build_summarize_prompt,
    build_translation_prompt,
    clean_translation_result,
    create_provider,
    extract_model_size,
    supports_writing_tools,
    validate_model_for_writing_tools,
)


EN_TO_JA = TranslationRequest(text="Hello world", source_lang=Language.EN, target_lang=Language.JA)


def fake_response(payload) -> mock.MagicMock:
    response = mock.MagicMock()
    body = payload if isinstance(payload, bytes) else json.dumps(payload).encode("utf-8")
    response.__enter__.return_value.read.return_value = body
    return response


class OllamaClientTests(unittest.TestCase):
    def test_translate_posts_a_chat_request(self) -> None:
        client = OllamaClient("http://localhost:11434/", "qwen2.5:3b")

        with mock.patch(
            "urllib.request.urlopen",
            return_value=fake_response({"message": {"content": "こんにちは世界"}}),
        ) as urlopen:
            result = client.translate(EN_TO_JA)

        self.assertEqual(result.translated_text, "こんにちは世界")
        self.assertIs(result.source_lang, Language.EN)
        self.assertIs(result.target_lang, Language.JA)
        self.assertGreaterEqual(result.duration_ms, 0)

        request = urlopen.call_args[0][0]
        self.assertEqual(request.full_url, "http://localhost:11434/api/chat")
        self.assertEqual(request.get_method(), "POST")
        payload = json.loads(request.data.decode("utf-8"))
        self.assertEqual(payload["model"], "qwen2.5:3b")
        self.assertFalse(payload["stream"])
        self.assertEqual(payload["options"], GENERAL_OPTIONS)
        self.assertIn("Hello world", payload["messages"][0]["content"])

    def test_translate_cleans_the_model_output(self) -> None:
        client = OllamaClient("http://localhost:11434", "qwen2.5:3b")

        with mock.patch(
            "urllib.request.urlopen",
            return_value=fake_response({"message": {"content": "翻訳: こんにちは世界"}}),
        ):
            result = client.translate(EN_TO_JA)

        self.assertEqual(result.translated_text, "こんにちは世界")

    def test_translate_timeout_raises_translation_error(self) -> None:
        client = OllamaClient("http://localhost:11434", "qwen2.5:3b", timeout=0.01)

        with mock.patch("urllib.request.urlopen", side_effect=socket.timeout):
            with self.assertRaises(TranslationTimeout) as ctx:
                client.translate(EN_TO_JA)

        self.assertIn("timed out", str(ctx.exception))
        self.assertIsInstance(ctx.exception, TranslationError)

    def test_connection_refused_reports_ollama_not_running(self) -> None:
        client = OllamaClient("http://localhost:11434", "qwen2.5:3b")
        error = urllib.error.URLError(ConnectionRefusedError())

        with mock.patch("urllib.request.urlopen", side_effect=error):
            with self.assertRaises(TranslationError) as ctx:
                client.translate(EN_TO_JA)

        self.assertEqual(str(ctx.exception), OLLAMA_NOT_RUNNING)

    def test_http_error_includes_status_and_body(self) -> None:
        client = OllamaClient("http://localhost:11434", "missing-model")
        error = urllib.error.HTTPError(
            "http://localhost:11434/api/chat", 404, "Not Found", hdrs=None, fp=io.BytesIO(b"model not found")
        )

        with mock.patch("urllib.request.urlopen", side_effect=error):
            with self.assertRaises(TranslationError) as ctx:
                client.translate(EN_TO_JA)

        self.assertEqual(str(ctx.exception), "API error: status 404: model not found")

    def test_unexpected_response_shape_is_an_error(self) -> None:
        client = OllamaClient("http://localhost:11434", "qwen2.5:3b")

        with mock.patch("urllib.request.urlopen", return_value=fake_response({"done": True})):
            with self.assertRaises(TranslationError):
                client.translate(EN_TO_JA)

    def test_invalid_json_is_an_error(self) -> None:
        client = OllamaClient("http://localhost:11434", "qwen2.5:3b")

        with mock.patch("urllib.request.urlopen", return_value=fake_response(b"<html>")):
            with self.assertRaises(TranslationError):
                client.translate(EN_TO_JA)

    def test_empty_text_is_rejected_without_a_request(self) -> None:
        client = OllamaClient("http://localhost:11434", "qwen2.5:3b")
        request = TranslationRequest(text="", source_lang=Language.EN, target_lang=Language.JA)

        with mock.patch("urllib.request.urlopen") as urlopen:
            with self.assertRaises(TranslationError):
                client.translate(request)

        urlopen.assert_not_called()

    def test_check_status_available(self) -> None:
        client = OllamaClient("http://localhost:11434", "qwen2.5:3b")

        with mock.patch("urllib.request.urlopen", return_value=fake_response({"models": []})) as urlopen:
            status = client.check_status()

        self.assertEqual(status, ProviderAvailable())
        self.assertEqual(urlopen.call_args[0][0].full_url, "http://localhost:11434/api/tags")

    def test_check_status_not_running(self) -> None:
        client = OllamaClient("http://localhost:11434", "qwen2.5:3b")

        with mock.patch("urllib.request.urlopen", side_effect=urllib.error.URLError(ConnectionRefusedError())):
            status = client.check_status()

        self.assertEqual(status, ProviderUnavailable("Ollama is not running"))

    def test_preload_sends_a_warm_up_chat(self) -> None:
        client = OllamaClient("http://localhost:11434", "qwen2.5:3b")

        with mock.patch("urllib.request.urlopen", return_value=fake_response({"message": {"content": "hi"}})) as urlopen:
            client.preload()

        payload = json.loads(urlopen.call_args[0][0].data.decode("utf-8"))
        self.assertEqual(payload["keep_alive"], "10m")


class WritingToolsTests(unittest.TestCase):
    def setUp(self) -> None:
        self.client = OllamaClient("http://localhost:11434", "qwen2.5:7b")

    def test_summarize_asks_for_a_short_summary_in_the_same_language(self) -> None:
        text = "The meeting moved to Friday. Please bring the quarterly report. Lunch is provided."

        with mock.patch(
            "urllib.request.urlopen",
            return_value=fake_response({"message": {"content": "\"The meeting is on Friday.\""}}),
        ) as urlopen:
            result = self.client.summarize(text, Language.EN)

        self.assertEqual(result.summary, "The meeting is on Friday.")
        self.assertEqual(result.original_length, len(text))
        self.assertEqual(result.summary_length, len("The meeting is on Friday."))
        self.assertGreaterEqual(result.duration_ms, 0)

        payload = json.loads(urlopen.call_args[0][0].data.decode("utf-8"))
        system, user = payload["messages"]
        self.assertEqual(system["role"], "system")
        self.assertIn("English only", system["content"])
        self.assertEqual(user["content"], build_summarize_prompt(text, Language.EN))
        self.assertEqual(payload["options"], GENERAL_OPTIONS)

    def test_japanese_summary_uses_the_japanese_prompt(self) -> None:
        text = "会議は金曜日に変更になりました。報告書を持参してください。"

        with mock.patch(
            "urllib.request.urlopen",
            return_value=fake_response({"message": {"content": "会議は金曜日です。"}}),
        ) as urlopen:
            result = self.client.summarize(text, Language.JA)

        self.assertEqual(result.summary, "会議は金曜日です。")
        payload = json.loads(urlopen.call_args[0][0].data.decode("utf-8"))
        self.assertIn("日本語でのみ", payload["messages"][0]["content"])
        self.assertTrue(payload["messages"][1]["content"].startswith("以下の日本語テキストを3文以内で"))
        self.assertTrue(payload["messages"][1]["content"].endswith(text))

    def test_generate_reply_writes_in_the_requested_language(self) -> None:
        text = "Could you send me the invoice by tomorrow?"

        with mock.patch(
            "urllib.request.urlopen",
            return_value=fake_response({"message": {"content": "Of course, I will send it today."}}),
        ) as urlopen:
            result = self.client.generate_reply(text, Language.EN, Language.JA)

        self.assertEqual(result.reply, "Of course, I will send it today.")
        self.assertIs(result.language, Language.EN)
        payload = json.loads(urlopen.call_args[0][0].data.decode("utf-8"))
        self.assertIn("reply in English only", payload["messages"][0]["content"])
        self.assertEqual(payload["messages"][1]["content"], build_reply_prompt(text, Language.EN))

    def test_writing_tools_share_the_translation_error_mapping(self) -> None:
        with mock.patch("urllib.request.urlopen", side_effect=socket.timeout):
            with self.assertRaises(TranslationTimeout):
                self.client.summarize("Some text to summarize.", Language.EN)
        with mock.patch("urllib.request.urlopen", side_effect=urllib.error.URLError(ConnectionRefusedError())):
            with self.assertRaises(TranslationError) as ctx:
                self.client.generate_reply("Hello", Language.EN, Language.JA)
        self.assertEqual(str(ctx.exception), OLLAMA_NOT_RUNNING)

    def test_small_models_are_refused_without_a_request(self) -> None:
        client = OllamaClient("http://localhost:11434", "qwen2.5:3b")

        with mock.patch("urllib.request.urlopen") as urlopen:
            with self.assertRaises(ModelTooSmall) as ctx:
                client.summarize("Some text", Language.EN)
            with self.assertRaises(ModelTooSmall):
                client.generate_reply("Some text", Language.JA, Language.EN)

        urlopen.assert_not_called()
        self.assertIn("3B", str(ctx.exception))
        self.assertIsInstance(ctx.exception, TranslationError)

    def test_empty_text_is_rejected(self) -> None:
        with mock.patch("urllib.request.urlopen") as urlopen:
            with self.assertRaises(TranslationError):
                self.client.summarize("", Language.EN)
            with self.assertRaises(TranslationError):
                self.client.generate_reply("", Language.EN, Language.JA)

        urlopen.assert_not_called()

    def test_model_size_is_read_from_the_tag(self) -> None:
        self.assertEqual(extract_model_size("qwen2.5:3b"), 3)
        self.assertEqual(extract_model_size("qwen2.5:14b"), 14)
        self.assertEqual(extract_model_size("llama-7b"), 7)
        self.assertEqual(extract_model_size("model_32b"), 32)
        self.assertIsNone(extract_model_size("custom-model"))
        self.assertIsNone(extract_model_size("mitmul/plamo-2-translate:Q4_K_M"))

    def test_models_without_a_size_are_allowed(self) -> None:
        validate_model_for_writing_tools("custom-model")
        validate_model_for_writing_tools(f"qwen2.5:{MIN_MODEL_SIZE_FOR_WRITING_TOOLS}b")
        with self.assertRaises(ModelTooSmall):
            validate_model_for_writing_tools("model:1b")

    def test_only_ollama_offers_writing_tools(self) -> None:
        self.assertTrue(supports_writing_tools(self.client))
        self.assertFalse(supports_writing_tools(ClaudeCliClient()))


class ClaudeCliClientTests(unittest.TestCase):
    def completed(self, returncode: int = 0, stdout: bytes = b"", stderr: bytes = b"") -> subprocess.CompletedProcess:
        return subprocess.CompletedProcess(args=["claude"], returncode=returncode, stdout=stdout, stderr=stderr)

    def test_translate_reads_the_result_field(self) -> None:
        client = ClaudeCliClient("/usr/local/bin/claude")
        output = json.dumps({"result": " こんにちは世界 "}).encode("utf-8")

        with mock.patch("subprocess.run", return_value=self.completed(stdout=output)) as run:
            result = client.translate(EN_TO_JA)

        self.assertEqual(result.translated_text, "こんにちは世界")
        command = run.call_args[0][0]
        self.assertEqual(command[0], "/usr/local/bin/claude")
        self.assertEqual(command[-1], "Hello world")
        self.assertIn("--output-format", command)

    def test_translate_prefers_the_output_field(self) -> None:
        client = ClaudeCliClient()
        output = json.dumps({"output": "first", "result": "second"}).encode("utf-8")

        with mock.patch("subprocess.run", return_value=self.completed(stdout=output)):
            self.assertEqual(client.translate(EN_TO_JA).translated_text, "first")

    def test_non_zero_exit_is_an_error(self) -> None:
        client = ClaudeCliClient()

        with mock.patch("subprocess.run", return_value=self.completed(returncode=1, stderr=b"not logged in")):
            with self.assertRaises(TranslationError) as ctx:
                client.translate(EN_TO_JA)

        self.assertIn("not logged in", str(ctx.exception))

    def test_timeout_is_reported(self) -> None:
        client = ClaudeCliClient(timeout=0.01)

        with mock.patch("subprocess.run", side_effect=subprocess.TimeoutExpired("claude", 0.01)):
            with self.assertRaises(TranslationTimeout):
                client.translate(EN_TO_JA)

    def test_missing_executable_is_an_error(self) -> None:
        client = ClaudeCliClient("/nonexistent/claude")

        with mock.patch("subprocess.run", side_effect=FileNotFoundError("claude")):
            with self.assertRaises(TranslationError):
                client.translate(EN_TO_JA)

    def test_output_without_text_is_an_error(self) -> None:
        client = ClaudeCliClient()

        with mock.patch("subprocess.run", return_value=self.completed(stdout=b'{"cost": 0.01}')):
            with self.assertRaises(TranslationError):
                client.translate(EN_TO_JA)

    def test_check_status_uses_path_lookup(self) -> None:
        client = ClaudeCliClient("claude")

        with mock.patch("shutil.which", return_value=None):
            self.assertIsInstance(client.check_status(), ProviderUnavailable)
        with mock.patch("shutil.which", return_value="/usr/bin/claude"):
            self.assertEqual(client.check_status(), ProviderAvailable())


class HelperTests(unittest.TestCase):
    def test_clean_strips_quotes_and_labels(self) -> None:
        self.assertEqual(clean_translation_result('"Hello"', "こんにちは"), "Hello")
        self.assertEqual(clean_translation_result("Translation: Hello", "こんにちは"), "Hello")
        self.assertEqual(clean_translation_result("『こんにちは』", "Hello"), "こんにちは")

    def test_clean_drops_an_echoed_source_paragraph(self) -> None:
        self.assertEqual(
            clean_translation_result("Hello world\n\nこんにちは世界", "Hello world"),
            "こんにちは世界",
        )

    def test_clean_drops_an_echoed_source_prefix(self) -> None:
        self.assertEqual(clean_translation_result("Hello world こんにちは世界", "Hello world"), "こんにちは世界")

    def test_translation_models_get_dedicated_options(self) -> None:
        self.assertEqual(build_api_options("mitmul/plamo-2-translate"), PLAMO_OPTIONS)
        self.assertEqual(build_api_options("qwen2.5:3b"), GENERAL_OPTIONS)

    def test_prompt_mentions_the_direction(self) -> None:
        prompt = build_translation_prompt("こんにちは", Language.JA, Language.EN)

        self.assertTrue(prompt.startswith("Translate the following Japanese text to English"))
        self.assertTrue(prompt.endswith("こんにちは"))

    def test_create_provider_follows_settings(self) -> None:
        ollama = create_provider(AppSettings(ollama_model="llama3", ollama_endpoint="http://gpu:11434"))
        claude = create_provider(AppSettings(provider="claude-cli", claude_cli_path="/opt/claude"))

        self.assertIsInstance(ollama, OllamaClient)
        self.assertEqual(ollama.model, "llama3")
        self.assertEqual(ollama.endpoint, "http://gpu:11434")
        self.assertIsInstance(claude, ClaudeCliClient)
        self.assertEqual(claude.cli_path, "/opt/claude")

    def test_create_provider_rejects_unknown_names(self) -> None:
        with self.assertRaises(TranslationError):
            create_provider(AppSettings(provider="carrier-pigeon"))


if __name__ == "__main__":  # pragma: no cover - allows direct execution
    unittest.main()
