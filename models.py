from enum import Enum
from typing import Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from traits import Trait

PlayerId = Literal["p1", "p2"]
Winner = Literal["p1", "p2", "draw"]
DamageTarget = Literal["p1", "p2", "both"]
MatchWinner = Literal["p1", "p2", "double_ko"]


class GamePhase(str, Enum):
    SETUP = "SETUP"
    P1_INPUT = "P1_INPUT"
    P2_INPUT = "P2_INPUT"
    PROCESSING = "PROCESSING"
    RESULT = "RESULT"
    GAME_OVER = "GAME_OVER"


class WireModel(BaseModel):
    """对外 JSON 使用 camelCase，Python 侧使用 snake_case。"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ModelConfig(BaseModel):
    """单个 LLM 配置。"""

    base_url: str
    api_key: str
    model: str


class TurnVerdict(BaseModel):
    """裁判模型结构化输出 schema，传给 OpenAI SDK response_format。"""

    winner: Winner
    damage: int  # 败者受到的伤害；平局时双方各受一次
    narration: str
    crit: bool


class TurnRequest(WireModel):
    """POST /api/resolve-turn 请求体。"""

    p1_name: str = Field(min_length=1)
    p1_action: str = Field(min_length=1)
    p1_trait: Trait
    p2_name: str = Field(min_length=1)
    p2_action: str = Field(min_length=1)
    p2_trait: Trait
    history_summary: str = ""


class TurnResult(WireModel):
    """一回合的判定结果。创建后不可变，插图通过 model_copy 回填。"""

    model_config = ConfigDict(frozen=True)

    winner: Winner
    damage: int
    narration: str
    crit: bool
    p1_action: str
    p2_action: str
    image_url: str | None = None


class IllustrationRequest(WireModel):
    """POST /api/illustration 请求体。"""

    p1_name: str
    p1_action: str
    p2_name: str
    p2_action: str
    narration: str


class IllustrationResponse(WireModel):
    image_url: str | None = None


class ImageAttached(WireModel):
    """SSE image 事件数据：插图只随该事件推送一次。"""

    entry_id: str
    image_url: str


class LogEntry(WireModel):
    """战斗日志条目。id 在创建时分配，插图回填按 id 匹配。"""

    id: str = Field(default_factory=lambda: uuid4().hex)
    turn: int = Field(ge=1)
    result: TurnResult


class Player(WireModel):
    id: PlayerId
    name: str
    hp: int = Field(ge=0)
    max_hp: int = Field(gt=0)
    trait: Trait
    avatar: str
    theme_color: str


class MatchSnapshot(WireModel):
    """对局状态快照，GET /match 与 SSE state 事件数据。"""

    phase: GamePhase
    turn_count: int
    p1: Player
    p2: Player
    logs: list[LogEntry]
    p1_input: str
    p2_input: str
    input_error: str
    damage_target: DamageTarget | None
    is_generating_image: bool
    can_next_turn: bool
    match_winner: MatchWinner | None = None


# ========== 对局操作请求体 ==========


class TraitSelection(WireModel):
    player_id: PlayerId
    trait: Trait


class NameChange(WireModel):
    player_id: PlayerId
    name: str


class ActionSubmission(WireModel):
    text: str
