import asyncio
from types import SimpleNamespace

import pytest

import llm
from models import IllustrationRequest, ModelConfig, TurnRequest, TurnVerdict
from traits import Trait

CONFIG = ModelConfig(base_url="http://llm.test/v1", api_key="sk-test", model="judge")


def make_request(history: str = "") -> TurnRequest:
    return TurnRequest(
        p1_name="Taro",
        p1_action="punch",
        p1_trait=Trait.TOUGH,
        p2_name="Hanako",
        p2_action="insult",
        p2_trait=Trait.MENTAL,
        history_summary=history,
    )


def install_fake_openai(monkeypatch, parsed=None, images=None):
    """替换 AsyncOpenAI，记录调用参数。"""
    calls = []

    class FakeCompletions:
        async def parse(self, **kwargs):
            calls.append(kwargs)
            message = SimpleNamespace(parsed=parsed)
            return SimpleNamespace(choices=[SimpleNamespace(message=message)])

    class FakeImages:
        async def generate(self, **kwargs):
            calls.append(kwargs)
            return SimpleNamespace(data=images)

    class FakeClient:
        def __init__(self, base_url, api_key):
            assert base_url == CONFIG.base_url
            assert api_key == CONFIG.api_key
            self.chat = SimpleNamespace(completions=FakeCompletions())
            self.images = FakeImages()

    monkeypatch.setattr(llm, "AsyncOpenAI", FakeClient)
    return calls


def test_turn_prompt_describes_traits():
    prompt = llm.build_turn_prompt(make_request())

    assert "Current Game State: (none)" in prompt
    assert "Name: Taro" in prompt
    assert "Tough Body / Fragile Heart" in prompt
    assert "Weak Body / Steel Mental" in prompt
    assert 'Action: "insult"' in prompt


def test_turn_prompt_includes_history():
    prompt = llm.build_turn_prompt(make_request("Turn 1: Taro won. boom"))
    assert "Current Game State: Turn 1: Taro won. boom" in prompt


def test_resolve_turn_echoes_actions(monkeypatch):
    verdict = TurnVerdict(winner="p2", damage=45, narration="効いた！", crit=True)
    calls = install_fake_openai(monkeypatch, parsed=verdict)

    result = asyncio.run(llm.resolve_turn(CONFIG, make_request()))

    assert result.winner == "p2"
    assert result.damage == 45
    assert result.crit is True
    assert (result.p1_action, result.p2_action) == ("punch", "insult")
    assert result.image_url is None
    assert calls[0]["model"] == "judge"
    assert calls[0]["response_format"] is TurnVerdict
    assert calls[0]["messages"][0]["content"] == llm.SYSTEM_INSTRUCTION


def test_call_judge_rejects_unparsed_response(monkeypatch):
    install_fake_openai(monkeypatch, parsed=None)
    with pytest.raises(ValueError):
        asyncio.run(llm.call_judge(CONFIG, make_request()))


ILLUSTRATION = IllustrationRequest(
    p1_name="Taro", p1_action="punch", p2_name="Hanako", p2_action="insult", narration="boom"
)


def test_illustrator_returns_data_url(monkeypatch):
    calls = install_fake_openai(monkeypatch, images=[SimpleNamespace(b64_json="QUJD", url=None)])

    image_url = asyncio.run(llm.call_illustrator(CONFIG, ILLUSTRATION))

    assert image_url == "data:image/png;base64,QUJD"
    assert "Taro" in calls[0]["prompt"] and "boom" in calls[0]["prompt"]


def test_illustrator_falls_back_to_url(monkeypatch):
    install_fake_openai(monkeypatch, images=[SimpleNamespace(b64_json=None, url="https://img.test/a.png")])
    assert asyncio.run(llm.call_illustrator(CONFIG, ILLUSTRATION)) == "https://img.test/a.png"


def test_illustrator_without_image(monkeypatch):
    install_fake_openai(monkeypatch, images=[])
    assert asyncio.run(llm.call_illustrator(CONFIG, ILLUSTRATION)) is None
