from dataclasses import dataclass
from enum import Enum


class Trait(str, Enum):
    """玩家体质（Archetype）标签。"""

    TOUGH = "TOUGH"
    MENTAL = "MENTAL"


@dataclass(frozen=True)
class TraitInfo:
    label: str
    sub: str
    desc: str
    hp: int
    avatar: str
    referee_desc: str  # 交给裁判模型的描述


TRAITS: dict[Trait, TraitInfo] = {
    Trait.TOUGH: TraitInfo(
        label="豆腐メンタルマッチョ",
        sub="身体は強いが心は脆い",
        desc="物理◎ / 精神✕",
        hp=120,
        avatar="🦍",
        referee_desc="Tough Body / Fragile Heart (Physical Res, Mental Weak)",
    ),
    Trait.MENTAL: TraitInfo(
        label="鋼メンタルもやし",
        sub="身体は弱いが心は強い",
        desc="物理✕ / 精神◎",
        hp=80,
        avatar="🧠",
        referee_desc="Weak Body / Steel Mental (Physical Weak, Mental Res)",
    ),
}


def get_trait(trait: Trait | str) -> TraitInfo:
    """按标签查表，未知标签抛 ValueError。"""
    return TRAITS[Trait(trait)]
