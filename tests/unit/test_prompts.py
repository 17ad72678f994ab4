import pytest

from parley.domain.generation.prompts import PROMPTS, PromptTemplateBuilder
from parley.domain.models.generation import Complexity


class TestBuild:

    def test_substitutes_known_placeholders(self):
        text = PromptTemplateBuilder.build("Hi {userName}, re: {message}", {"userName": "Ana", "message": "lunch"})

        assert text == "Hi Ana, re: lunch"

    def test_unknown_placeholders_are_kept(self):
        text = PromptTemplateBuilder.build("{context} / {missing}", {"context": "ctx"})

        assert text == "ctx / {missing}"

    def test_values_are_stringified(self):
        assert PromptTemplateBuilder.build("n={n}", {"n": 3}) == "n=3"


class TestBuildOptimal:

    def test_system_prompt_choice(self):
        assert PromptTemplateBuilder.build_optimal("system") == PROMPTS["system_concise"]
        assert PromptTemplateBuilder.build_optimal("system", conversation_length=25) == PROMPTS["system_balanced"]
        assert PromptTemplateBuilder.build_optimal(
            "system", conversation_length=25, complexity=Complexity.COMPLEX
        ) == PROMPTS["system_detailed"]

    def test_response_prompt_choice(self):
        assert PromptTemplateBuilder.build_optimal("response") == PROMPTS["response_focused"]
        assert PromptTemplateBuilder.build_optimal("response", conversation_length=11) == PROMPTS["response_contextual"]

    def test_variables_are_applied(self):
        text = PromptTemplateBuilder.build_optimal(
            "response",
            conversation_length=15,
            variables={"context": "CTX", "message": "MSG", "userName": "Ana"}
        )

        assert "Current message from Ana: MSG" in text
        assert "CTX" in text
        assert "{" not in text

    def test_unknown_type(self):
        with pytest.raises(ValueError):
            PromptTemplateBuilder.build_optimal("haiku")
