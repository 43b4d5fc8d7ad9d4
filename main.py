import asyncio
import logging
import os
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from dataclasses import asdict

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sse_starlette.sse import EventSourceResponse

from battle import MatchController, TransitionError
from client import GameApiClient
from llm import call_illustrator, resolve_turn
from models import (
    ActionSubmission,
    IllustrationRequest,
    IllustrationResponse,
    ImageAttached,
    MatchSnapshot,
    ModelConfig,
    NameChange,
    TraitSelection,
    TurnRequest,
    TurnResult,
)
from traits import TRAITS

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.openai.com/v1"
DEFAULT_JUDGE_MODEL = "gpt-4o-mini"
DEFAULT_IMAGE_MODEL = "gpt-image-1"
MISSING_KEY = "Missing OPENAI_API_KEY"


def load_model_config(model_env: str, default_model: str) -> ModelConfig | None:
    """从环境变量读取上游配置，缺少凭证时返回 None。每次请求时读取。"""
    api_key = os.environ.get("OPENAI_API_KEY")
    if not api_key:
        return None
    return ModelConfig(
        base_url=os.environ.get("OPENAI_BASE_URL", DEFAULT_BASE_URL),
        api_key=api_key,
        model=os.environ.get(model_env, default_model),
    )


def judge_config() -> ModelConfig | None:
    return load_model_config("JUDGE_MODEL", DEFAULT_JUDGE_MODEL)


def image_config() -> ModelConfig | None:
    return load_model_config("IMAGE_MODEL", DEFAULT_IMAGE_MODEL)


# ========== 本地对局（进程内调用上游模型） ==========


async def local_resolver(request: TurnRequest) -> TurnResult:
    config = judge_config()
    if config is None:
        raise RuntimeError(MISSING_KEY)
    return await resolve_turn(config, request)


async def local_illustrator(request: IllustrationRequest) -> str | None:
    config = image_config()
    if config is None:
        raise RuntimeError(MISSING_KEY)
    return await call_illustrator(config, request)


_subscribers: set[asyncio.Queue[dict[str, str]]] = set()


def _sse_event(event: str, data: str) -> dict[str, str]:
    return {"event": event, "data": data}


def strip_images(snapshot: MatchSnapshot) -> MatchSnapshot:
    """去掉日志里的插图，state 事件不重复携带 base64 图片。"""
    logs = [
        entry.model_copy(update={"result": entry.result.model_copy(update={"image_url": None})})
        for entry in snapshot.logs
    ]
    return snapshot.model_copy(update={"logs": logs})


def _state_event(snapshot: MatchSnapshot) -> dict[str, str]:
    return _sse_event("state", strip_images(snapshot).model_dump_json(by_alias=True))


def _image_event(entry_id: str, image_url: str) -> dict[str, str]:
    data = ImageAttached(entry_id=entry_id, image_url=image_url).model_dump_json(by_alias=True)
    return _sse_event("image", data)


def broadcast(snapshot: MatchSnapshot) -> None:
    event = _state_event(snapshot)
    for queue in _subscribers:
        queue.put_nowait(event)


def broadcast_image(entry_id: str, image_url: str) -> None:
    event = _image_event(entry_id, image_url)
    for queue in _subscribers:
        queue.put_nowait(event)


def build_controller() -> MatchController:
    """GAME_API_URL 存在时走 HTTP 接口，否则进程内直接调用模型。"""
    api_url = os.environ.get("GAME_API_URL")
    if api_url:
        client = GameApiClient(api_url)
        return MatchController(
            client.resolve_turn,
            client.generate_illustration,
            on_change=broadcast,
            on_image=broadcast_image,
        )
    return MatchController(
        local_resolver, local_illustrator, on_change=broadcast, on_image=broadcast_image
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.match = build_controller()
    yield
    await app.state.match.close()


app = FastAPI(title="Kotodama Duel", lifespan=lifespan)


def transition_error_handler(_request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_409_CONFLICT, content={"detail": str(exc)})


app.add_exception_handler(TransitionError, transition_error_handler)


def get_match(request: Request) -> MatchController:
    return request.app.state.match


# ========== 上游代理接口 ==========


@app.post("/api/resolve-turn", response_model=TurnResult, response_model_exclude_none=True)
async def resolve_turn_endpoint(request: TurnRequest):
    config = judge_config()
    if config is None:
        raise HTTPException(status_code=500, detail=MISSING_KEY)
    try:
        return await resolve_turn(config, request)
    except Exception as e:
        logger.exception(f"resolveTurn 调用异常: {e}")
        raise HTTPException(status_code=500, detail=str(e)) from e


@app.post("/api/illustration", response_model=IllustrationResponse)
async def illustration_endpoint(request: IllustrationRequest):
    config = image_config()
    if config is None:
        raise HTTPException(status_code=500, detail=MISSING_KEY)
    try:
        image_url = await call_illustrator(config, request)
    except Exception as e:
        logger.exception(f"插图生成异常: {e}")
        image_url = None
    return IllustrationResponse(image_url=image_url)


@app.get("/archetypes")
async def list_archetypes():
    return [{"trait": trait.value, **asdict(info)} for trait, info in TRAITS.items()]


# ========== 对局接口 ==========


@app.get("/match", response_model=MatchSnapshot)
async def get_state(match: MatchController = Depends(get_match)):
    return match.snapshot()


@app.post("/match/trait", response_model=MatchSnapshot)
async def select_trait(body: TraitSelection, match: MatchController = Depends(get_match)):
    match.select_trait(body.player_id, body.trait)
    return match.snapshot()


@app.post("/match/name", response_model=MatchSnapshot)
async def rename(body: NameChange, match: MatchController = Depends(get_match)):
    match.rename(body.player_id, body.name)
    return match.snapshot()


@app.post("/match/start", response_model=MatchSnapshot)
async def start(match: MatchController = Depends(get_match)):
    match.start()
    return match.snapshot()


@app.post("/match/action", response_model=MatchSnapshot)
async def submit_action(body: ActionSubmission, match: MatchController = Depends(get_match)):
    await match.submit_action(body.text)
    return match.snapshot()


@app.post("/match/next", response_model=MatchSnapshot)
async def next_turn(match: MatchController = Depends(get_match)):
    match.next_turn()
    return match.snapshot()


@app.post("/match/reset", response_model=MatchSnapshot)
async def reset(match: MatchController = Depends(get_match)):
    match.reset()
    return match.snapshot()


async def stream_state(match: MatchController) -> AsyncGenerator[dict[str, str], None]:
    """先推送当前快照和已有插图，之后推送每次状态变化与新插图。

    state 事件不含插图，插图只通过 image 事件按日志条目 id 推送。
    """
    queue: asyncio.Queue[dict[str, str]] = asyncio.Queue()
    _subscribers.add(queue)
    try:
        snapshot = match.snapshot()
        yield _state_event(snapshot)
        for entry in snapshot.logs:
            if entry.result.image_url:
                yield _image_event(entry.id, entry.result.image_url)
        while True:
            yield await queue.get()
    finally:
        _subscribers.discard(queue)


@app.get("/match/events")
async def match_events(match: MatchController = Depends(get_match)):
    return EventSourceResponse(stream_state(match))


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=os.environ.get("HOST", "127.0.0.1"), port=int(os.environ.get("PORT", "8000")))
