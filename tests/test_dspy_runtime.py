import os
import unittest
from unittest import mock

from pke.core.config import GenerationConfig
from pke.core.dspy_runtime import DSPyConfigurationError, configure_generation_lm
from pke.core.errors import GenerationError
from pke.engine.backend import (
    DeferredGenerationBackend,
    DSPyGenerationBackend,
    GenerationRequest,
    OfflineGenerationBackend,
)
from pke.engine.parsing import parse_response


def _request(invocation: int = 1, **overrides) -> GenerationRequest:
    payload = {
        "invocation": invocation,
        "system_prompt": "system",
        "user_message": "user",
        "temperature": 0.4,
        "max_tokens": 500,
    }
    payload.update(overrides)
    return GenerationRequest(**payload)


class ConfigureGenerationLMTests(unittest.TestCase):
    def setUp(self) -> None:
        self.cfg = GenerationConfig()

    @mock.patch("pke.core.dspy_runtime.dspy")
    def test_configures_openai_model(self, mock_dspy) -> None:
        mock_dspy.OpenAI = mock.Mock()
        lm = configure_generation_lm(self.cfg, api_key="sk-test")

        self.assertIs(lm, mock_dspy.OpenAI.return_value)
        kwargs = mock_dspy.OpenAI.call_args.kwargs
        self.assertEqual(kwargs["model"], "gpt-4o")
        self.assertEqual(kwargs["api_key"], "sk-test")
        self.assertEqual(kwargs["max_tokens"], 4000)

    @mock.patch("pke.core.dspy_runtime.dspy")
    def test_falls_back_to_generic_lm_when_openai_missing(self, mock_dspy) -> None:
        mock_dspy.OpenAI = None
        configure_generation_lm(self.cfg, api_key="sk-test")

        self.assertEqual(mock_dspy.LM.call_count, 1)
        self.assertEqual(mock_dspy.LM.call_args.kwargs["model"], "openai/gpt-4o")

    def test_missing_api_key_raises(self) -> None:
        with mock.patch.dict(os.environ, {}, clear=True):
            with self.assertRaises(DSPyConfigurationError):
                configure_generation_lm(self.cfg)

    @mock.patch("pke.core.dspy_runtime.dspy")
    def test_custom_key_and_base_envs(self, mock_dspy) -> None:
        mock_dspy.OpenAI = mock.Mock()
        cfg = GenerationConfig(api_key_env="PKE_TEST_KEY", api_base_env="PKE_TEST_BASE")
        with mock.patch.dict(
            os.environ,
            {"PKE_TEST_KEY": "sk-custom", "OPENAI_API_KEY": "sk-default", "PKE_TEST_BASE": "https://proxy"},
            clear=True,
        ):
            configure_generation_lm(cfg)

        kwargs = mock_dspy.OpenAI.call_args.kwargs
        self.assertEqual(kwargs["api_key"], "sk-custom")
        self.assertEqual(kwargs["api_base"], "https://proxy")


class FakeChatLM:
    def __init__(self, reply, usage=None) -> None:
        self.reply = reply
        self.calls = []
        self.history = [{"usage": usage}] if usage else []

    def __call__(self, *args, **kwargs):
        self.calls.append((args, kwargs))
        if isinstance(self.reply, Exception):
            raise self.reply
        return self.reply


class DSPyGenerationBackendTests(unittest.TestCase):
    @mock.patch("pke.engine.backend.dspy")
    def test_sends_chat_messages(self, mock_dspy) -> None:
        mock_dspy.OpenAI = None
        lm = FakeChatLM(['{"description": "x"}'], usage={"prompt_tokens": 5, "completion_tokens": 3, "total_tokens": 8})
        backend = DSPyGenerationBackend(lm, model="gpt-4o")

        response = backend.generate(_request())

        args, kwargs = lm.calls[0]
        self.assertEqual(args, ())
        self.assertEqual([message["role"] for message in kwargs["messages"]], ["system", "user"])
        self.assertEqual(kwargs["temperature"], 0.4)
        self.assertEqual(kwargs["max_tokens"], 500)
        self.assertEqual(response.content, '{"description": "x"}')
        self.assertEqual(response.usage, {"prompt_tokens": 5, "completion_tokens": 3, "total_tokens": 8})
        self.assertEqual(response.model, "gpt-4o")
        self.assertEqual(response.provider, "openai")

    @mock.patch("pke.engine.backend.dspy")
    def test_legacy_client_gets_a_single_prompt(self, mock_dspy) -> None:
        class LegacyLM(FakeChatLM):
            pass

        mock_dspy.OpenAI = LegacyLM
        lm = LegacyLM(["answer"])
        DSPyGenerationBackend(lm).generate(_request(system_prompt="S", user_message="U"))

        args, kwargs = lm.calls[0]
        self.assertEqual(args, ("S\n\nU",))
        self.assertNotIn("messages", kwargs)

    @mock.patch("pke.engine.backend.dspy")
    def test_errors_and_empty_output_become_generation_errors(self, mock_dspy) -> None:
        mock_dspy.OpenAI = None
        with self.assertRaises(GenerationError):
            DSPyGenerationBackend(FakeChatLM(RuntimeError("rate limited"))).generate(_request())
        with self.assertRaises(GenerationError):
            DSPyGenerationBackend(FakeChatLM([""])).generate(_request())

    @mock.patch("pke.engine.backend.configure_generation_lm")
    def test_from_config(self, mock_configure) -> None:
        cfg = GenerationConfig(model="gpt-4o-mini")
        backend = DSPyGenerationBackend.from_config(cfg, api_key="sk")
        mock_configure.assert_called_once_with(cfg, api_key="sk")
        self.assertIs(backend.lm, mock_configure.return_value)
        self.assertEqual(backend.model, "gpt-4o-mini")


class DeferredBackendTests(unittest.TestCase):
    def test_missing_key_surfaces_on_first_generate(self) -> None:
        backend = DeferredGenerationBackend(GenerationConfig())
        with mock.patch.dict(os.environ, {}, clear=True):
            with self.assertRaises(GenerationError):
                backend.generate(_request())
        self.assertFalse(backend.configured)

    @mock.patch("pke.engine.backend.dspy")
    @mock.patch("pke.engine.backend.configure_generation_lm")
    def test_configures_once_and_delegates(self, mock_configure, mock_dspy) -> None:
        mock_dspy.OpenAI = None
        mock_configure.return_value = FakeChatLM(["{}"])
        backend = DeferredGenerationBackend(GenerationConfig())

        backend.generate(_request())
        response = backend.generate(_request())

        self.assertTrue(backend.configured)
        self.assertEqual(response.content, "{}")
        mock_configure.assert_called_once()


class OfflineBackendTests(unittest.TestCase):
    def test_every_invocation_yields_structured_json(self) -> None:
        backend = OfflineGenerationBackend()
        contexts = {
            1: {"course_title": "Stats"},
            2: {"course_title": "Stats", "requested_count": 2},
            3: {"learning_objectives": [{"code": "LO1", "text": "Describe variance"}]},
            4: {"structure": {"topics": [{"title": "T"}]}, "learning_objectives": [{"code": "LO1"}]},
            5: {"template_content": "Hi {{name}}"},
        }
        for number, context in contexts.items():
            response = backend.generate(_request(number, context=context))
            parsed = parse_response(response.content, number)
            self.assertFalse(parsed.parse_error, number)
            self.assertEqual(response.model, "offline")

        objectives = parse_response(backend.generate(_request(2, context=contexts[2])).content, 2).data
        self.assertEqual(len(objectives["learning_objectives"]), 2)

    def test_unknown_invocation(self) -> None:
        with self.assertRaises(GenerationError):
            OfflineGenerationBackend().generate(_request(7))


if __name__ == "__main__":
    unittest.main()
