import asyncio
import logging
from collections.abc import Awaitable, Callable, Coroutine
from typing import Any

logger = logging.getLogger(__name__)

from models import (
    DamageTarget,
    GamePhase,
    IllustrationRequest,
    LogEntry,
    MatchSnapshot,
    MatchWinner,
    Player,
    PlayerId,
    TurnRequest,
    TurnResult,
    Winner,
)
from traits import Trait, get_trait

TurnResolver = Callable[[TurnRequest], Awaitable[TurnResult]]
Illustrator = Callable[[IllustrationRequest], Awaitable[str | None]]

HISTORY_WINDOW = 3
HIT_DELAY = 0.5  # 受击动画
GAME_OVER_DELAY = 4.0

INPUT_ERROR = "行動を入力してください / Please enter an action"
NAME_ERROR = "名前を入力してください / Please enter a name"
FALLBACK_DAMAGE = 5
FALLBACK_NARRATION = "次元の歪みにより、判別不能！両者に軽微なダメージ。"

DEFAULT_NAMES: dict[PlayerId, str] = {"p1": "Player 1", "p2": "Player 2"}
DEFAULT_TRAITS: dict[PlayerId, Trait] = {"p1": Trait.TOUGH, "p2": Trait.MENTAL}
THEME_COLORS: dict[PlayerId, str] = {"p1": "text-blue-400", "p2": "text-red-400"}


class TransitionError(Exception):
    """当前阶段不允许该操作，状态保持不变。"""


def new_player(pid: PlayerId, trait: Trait, name: str | None = None) -> Player:
    """按体质初始化玩家，hp = max_hp = 体质基础血量。"""
    info = get_trait(trait)
    return Player(
        id=pid,
        name=name or DEFAULT_NAMES[pid],
        hp=info.hp,
        max_hp=info.hp,
        trait=trait,
        avatar=info.avatar,
        theme_color=THEME_COLORS[pid],
    )


def build_history_summary(
    logs: list[LogEntry],
    p1_name: str,
    p2_name: str,
    window: int = HISTORY_WINDOW,
) -> str:
    """最近 window 回合的摘要，旧的在前，供裁判模型参考。"""
    names = {"p1": p1_name, "p2": p2_name}
    lines = []
    for entry in logs[-window:] if window > 0 else []:
        result = entry.result
        if result.winner == "draw":
            lines.append(f"Turn {entry.turn}: Draw. {result.narration}")
        else:
            lines.append(f"Turn {entry.turn}: {names[result.winner]} won. {result.narration}")
    return "; ".join(lines)


def apply_damage(p1_hp: int, p2_hp: int, winner: Winner, damage: int) -> tuple[int, int]:
    """按判定扣血，返回 (p1_hp, p2_hp)，下限为 0。

    平局时双方各扣一次完整伤害，不平分。
    """
    damage = max(0, damage)
    if winner == "p2":
        p1_hp -= damage
    elif winner == "p1":
        p2_hp -= damage
    else:
        p1_hp -= damage
        p2_hp -= damage
    return max(0, p1_hp), max(0, p2_hp)


def damage_target_for(winner: Winner) -> DamageTarget:
    if winner == "p1":
        return "p2"
    if winner == "p2":
        return "p1"
    return "both"


def normalize_result(result: TurnResult) -> TurnResult:
    """伤害下限为 0，日志、快照和历史摘要里都不会出现负伤害。"""
    if result.damage < 0:
        return result.model_copy(update={"damage": 0})
    return result


def fallback_result(p1_action: str, p2_action: str) -> TurnResult:
    return TurnResult(
        winner="draw",
        damage=FALLBACK_DAMAGE,
        narration=FALLBACK_NARRATION,
        crit=False,
        p1_action=p1_action,
        p2_action=p2_action,
    )


class MatchController:
    """单设备双人对局的回合状态机。

    阶段流转：
      SETUP → P1_INPUT → P2_INPUT → PROCESSING → RESULT → (P1_INPUT | GAME_OVER)
      GAME_OVER → SETUP（再战）

    PROCESSING 期间不接受任何操作，因此同一时刻最多只有一个回合在判定。
    插图生成是后台任务，按日志条目 id 回填；未完成前不能进入下一回合。
    裁判与插图调用的异常都在这里吞掉并降级，不会中断对局。

    on_change 回调在每次状态变化后触发，on_image 在插图回填成功后触发，
    二者供 SSE 推送使用。
    """

    def __init__(
        self,
        resolver: TurnResolver,
        illustrator: Illustrator,
        *,
        hit_delay: float = HIT_DELAY,
        game_over_delay: float = GAME_OVER_DELAY,
        on_change: Callable[[MatchSnapshot], None] | None = None,
        on_image: Callable[[str, str], None] | None = None,
    ) -> None:
        self._resolver = resolver
        self._illustrator = illustrator
        self.hit_delay = hit_delay
        self.game_over_delay = game_over_delay
        self.on_change = on_change
        self.on_image = on_image

        self._tasks: set[asyncio.Task] = set()
        self._pending_images: set[str] = set()

        self.phase = GamePhase.SETUP
        self.turn_count = 1
        self.players: dict[PlayerId, Player] = {
            pid: new_player(pid, trait) for pid, trait in DEFAULT_TRAITS.items()
        }
        self.logs: list[LogEntry] = []
        self.inputs: dict[PlayerId, str] = {"p1": "", "p2": ""}
        self.input_error = ""
        self.damage_target: DamageTarget | None = None

    # ---------- 查询 ----------

    @property
    def p1(self) -> Player:
        return self.players["p1"]

    @property
    def p2(self) -> Player:
        return self.players["p2"]

    @property
    def is_generating_image(self) -> bool:
        return bool(self._pending_images)

    @property
    def is_knockout(self) -> bool:
        return self.p1.hp <= 0 or self.p2.hp <= 0

    @property
    def can_next_turn(self) -> bool:
        return (
            self.phase == GamePhase.RESULT
            and not self.is_generating_image
            and not self.is_knockout
        )

    @property
    def match_winner(self) -> MatchWinner | None:
        """有人倒下时的胜负：p1 / p2 / double_ko；否则为 None。"""
        p1_down, p2_down = self.p1.hp <= 0, self.p2.hp <= 0
        if p1_down and p2_down:
            return "double_ko"
        if p1_down:
            return "p2"
        if p2_down:
            return "p1"
        return None

    def snapshot(self) -> MatchSnapshot:
        return MatchSnapshot(
            phase=self.phase,
            turn_count=self.turn_count,
            p1=self.p1.model_copy(),
            p2=self.p2.model_copy(),
            logs=[entry.model_copy() for entry in self.logs],
            p1_input=self.inputs["p1"],
            p2_input=self.inputs["p2"],
            input_error=self.input_error,
            damage_target=self.damage_target,
            is_generating_image=self.is_generating_image,
            can_next_turn=self.can_next_turn,
            match_winner=self.match_winner,
        )

    # ---------- 内部工具 ----------

    def _require(self, *phases: GamePhase) -> None:
        if self.phase not in phases:
            allowed = ", ".join(p.value for p in phases)
            raise TransitionError(f"当前阶段 {self.phase.value} 不允许该操作（需要 {allowed}）")

    def _notify(self) -> None:
        if self.on_change:
            self.on_change(self.snapshot())

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def settle(self) -> None:
        """等待所有后台任务（插图、结束计时）完成。"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        """服务关闭时取消仍在进行的后台任务。"""
        for task in list(self._tasks):
            task.cancel()
        await self.settle()

    # ---------- SETUP ----------

    def select_trait(self, pid: PlayerId, trait: Trait) -> None:
        self._require(GamePhase.SETUP)
        self.players[pid] = new_player(pid, trait, self.players[pid].name)
        self._notify()

    def rename(self, pid: PlayerId, name: str) -> bool:
        self._require(GamePhase.SETUP)
        name = name.strip()
        if not name:
            self.input_error = NAME_ERROR
            self._notify()
            return False
        self.input_error = ""
        self.players[pid] = self.players[pid].model_copy(update={"name": name})
        self._notify()
        return True

    def start(self) -> None:
        self._require(GamePhase.SETUP)
        self.input_error = ""
        self.phase = GamePhase.P1_INPUT
        logger.debug("对局开始: %s vs %s", self.p1.name, self.p2.name)
        self._notify()

    # ---------- 回合 ----------

    async def submit_action(self, text: str) -> bool:
        """提交当前输入方的行动。空行动不推进阶段，返回 False。

        P2 提交后会一直等待本回合判定完成才返回。
        """
        self._require(GamePhase.P1_INPUT, GamePhase.P2_INPUT)
        if not text.strip():
            self.input_error = INPUT_ERROR
            self._notify()
            return False

        self.input_error = ""
        if self.phase == GamePhase.P1_INPUT:
            self.inputs["p1"] = text
            self.phase = GamePhase.P2_INPUT
            self._notify()
            return True

        self.inputs["p2"] = text
        await self._process_turn()
        return True

    async def _process_turn(self) -> None:
        self.phase = GamePhase.PROCESSING
        self._notify()

        p1, p2 = self.p1, self.p2
        p1_action, p2_action = self.inputs["p1"], self.inputs["p2"]
        turn = self.turn_count

        request = TurnRequest(
            p1_name=p1.name,
            p1_action=p1_action,
            p1_trait=p1.trait,
            p2_name=p2.name,
            p2_action=p2_action,
            p2_trait=p2.trait,
            history_summary=build_history_summary(self.logs, p1.name, p2.name),
        )
        result = normalize_result(await self._resolve(request))

        self.damage_target = damage_target_for(result.winner)
        self._notify()
        if self.hit_delay > 0:
            await asyncio.sleep(self.hit_delay)

        entry = LogEntry(turn=turn, result=result)
        self.logs.append(entry)
        p1_hp, p2_hp = apply_damage(p1.hp, p2.hp, result.winner, result.damage)
        self.players["p1"] = p1.model_copy(update={"hp": p1_hp})
        self.players["p2"] = p2.model_copy(update={"hp": p2_hp})

        self.phase = GamePhase.RESULT
        self.damage_target = None
        self._pending_images.add(entry.id)
        logger.debug(
            "回合 %d: winner=%s damage=%d crit=%s hp=%d/%d",
            turn, result.winner, result.damage, result.crit, p1_hp, p2_hp,
        )
        self._notify()

        self._spawn(self._illustrate(entry.id, IllustrationRequest(
            p1_name=p1.name,
            p1_action=p1_action,
            p2_name=p2.name,
            p2_action=p2_action,
            narration=result.narration,
        )))

        if p1_hp <= 0 or p2_hp <= 0:
            self._spawn(self._finish_after_delay())

    async def _resolve(self, request: TurnRequest) -> TurnResult:
        try:
            return await self._resolver(request)
        except Exception as e:
            logger.exception(f"回合判定失败，使用兜底结果: {e}")
            return fallback_result(request.p1_action, request.p2_action)

    async def _illustrate(self, entry_id: str, request: IllustrationRequest) -> None:
        try:
            try:
                image_url = await self._illustrator(request)
            except Exception as e:
                logger.exception(f"插图生成失败: {e}")
                image_url = None
            if image_url:
                if self.attach_image(entry_id, image_url) and self.on_image:
                    self.on_image(entry_id, image_url)
        finally:
            self._pending_images.discard(entry_id)
            self._notify()

    def attach_image(self, entry_id: str, image_url: str) -> bool:
        """把插图回填到 id 对应的日志条目；条目已不存在（例如已再战）时丢弃。"""
        for entry in self.logs:
            if entry.id == entry_id:
                entry.result = entry.result.model_copy(update={"image_url": image_url})
                return True
        logger.debug("日志条目 %s 已不存在，丢弃插图", entry_id)
        return False

    async def _finish_after_delay(self) -> None:
        if self.game_over_delay > 0:
            await asyncio.sleep(self.game_over_delay)
        if self.phase == GamePhase.RESULT and self.is_knockout:
            self.phase = GamePhase.GAME_OVER
            logger.debug("对局结束: %s %d / %s %d", self.p1.name, self.p1.hp, self.p2.name, self.p2.hp)
            self._notify()

    def next_turn(self) -> None:
        self._require(GamePhase.RESULT)
        if self.is_generating_image:
            raise TransitionError("插图生成中，暂时不能进入下一回合")
        if self.is_knockout:
            raise TransitionError("已有玩家倒下，对局即将结束")
        self.turn_count += 1
        self.inputs = {"p1": "", "p2": ""}
        self.phase = GamePhase.P1_INPUT
        self._notify()

    def reset(self) -> None:
        """再战：保留名字和上次选择的体质，其余全部重置。"""
        self._require(GamePhase.GAME_OVER)
        self.players = {
            pid: new_player(pid, player.trait, player.name)
            for pid, player in self.players.items()
        }
        self.logs = []
        self.turn_count = 1
        self.inputs = {"p1": "", "p2": ""}
        self.input_error = ""
        self.damage_target = None
        self._pending_images.clear()
        self.phase = GamePhase.SETUP
        self._notify()
