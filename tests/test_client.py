import asyncio
import json

import httpx
import pytest

from client import GameApiClient
from models import IllustrationRequest, TurnRequest
from traits import Trait

TURN = TurnRequest(
    p1_name="Taro",
    p1_action="punch",
    p1_trait=Trait.TOUGH,
    p2_name="Hanako",
    p2_action="insult",
    p2_trait=Trait.MENTAL,
    history_summary="",
)
ILLUSTRATION = IllustrationRequest(
    p1_name="Taro", p1_action="punch", p2_name="Hanako", p2_action="insult", narration="boom"
)


def make_client(handler) -> GameApiClient:
    return GameApiClient("http://game.test/", transport=httpx.MockTransport(handler))


def test_resolve_turn_posts_camel_case_body():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={
            "winner": "p2", "damage": 45, "narration": "効いた", "crit": True,
            "p1Action": "punch", "p2Action": "insult",
        })

    result = asyncio.run(make_client(handler).resolve_turn(TURN))

    assert seen["path"] == "/api/resolve-turn"
    assert seen["body"] == {
        "p1Name": "Taro", "p1Action": "punch", "p1Trait": "TOUGH",
        "p2Name": "Hanako", "p2Action": "insult", "p2Trait": "MENTAL",
        "historySummary": "",
    }
    assert result.winner == "p2" and result.damage == 45 and result.crit is True


def test_resolve_turn_raises_on_error_status():
    client = make_client(lambda request: httpx.Response(500, text="Missing OPENAI_API_KEY"))
    with pytest.raises(httpx.HTTPStatusError):
        asyncio.run(client.resolve_turn(TURN))


def test_resolve_turn_raises_on_malformed_body():
    client = make_client(lambda request: httpx.Response(200, text="not json"))
    with pytest.raises(ValueError):
        asyncio.run(client.resolve_turn(TURN))


def test_generate_illustration():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/illustration"
        assert json.loads(request.content)["narration"] == "boom"
        return httpx.Response(200, json={"imageUrl": "data:image/png;base64,AAAA"})

    assert asyncio.run(make_client(handler).generate_illustration(ILLUSTRATION)) == "data:image/png;base64,AAAA"


def test_generate_illustration_null():
    client = make_client(lambda request: httpx.Response(200, json={"imageUrl": None}))
    assert asyncio.run(client.generate_illustration(ILLUSTRATION)) is None
