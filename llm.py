from openai import AsyncOpenAI

from models import IllustrationRequest, ModelConfig, TurnRequest, TurnResult, TurnVerdict
from traits import get_trait

SYSTEM_INSTRUCTION = """\
You are the impartial and creative referee of a fantasy/sci-fi battle arena called "Kotodama Duel".
Two players will provide text actions describing what they do this turn. Each player has a specific trait (Archetype).

Archetypes:
1. "TOUGH" (Tough Body, Fragile Heart):
   - Strong against Physical attacks (takes less damage).
   - Very Weak against Mental/Psychological attacks (takes EXTRA damage).
2. "MENTAL" (Weak Body, Steel Mental):
   - Immune/Strong against Mental/Psychological attacks.
   - Very Weak against Physical attacks (takes EXTRA damage).

Your job is to:
1. Analyze the actions based on logic, elemental advantages, and **Player Traits**.
   - Example: If a TOUGH player is insulted, they should take massive damage.
   - Example: If a MENTAL player is punched, they should take massive damage.
2. Determine who wins the exchange ("p1", "p2" or "draw").
3. Assign a damage value between 5 and 50 based on the effectiveness and traits.
   - Standard: 15-25
   - Effective (Trait Weakness): 30-50
   - Ineffective (Trait Resistance): 5-10
   Damage is dealt to the loser. If draw, damage is dealt to both.
4. If a move is extremely clever or exploits a trait weakness perfectly, mark it as a 'crit' (critical hit).
5. Write a short, exciting narration (in Japanese) describing the clash and the outcome.

Format constraints:
- Return ONLY valid JSON matching the schema.
- Narration should be dramatic but concise (max 2 sentences)."""

LLM_TIMEOUT = 60.0
IMAGE_TIMEOUT = 120.0
IMAGE_SIZE = "1536x1024"


def build_turn_prompt(request: TurnRequest) -> str:
    p1 = get_trait(request.p1_trait)
    p2 = get_trait(request.p2_trait)
    return f"""\
Current Game State: {request.history_summary or "(none)"}

[Player 1]
Name: {request.p1_name}
Trait: {p1.referee_desc}
Action: "{request.p1_action}"

[Player 2]
Name: {request.p2_name}
Trait: {p2.referee_desc}
Action: "{request.p2_action}"

Who wins this round and what happens? Consider the traits carefully!"""


def build_messages(request: TurnRequest, system_prompt: str = "") -> list[dict[str, str]]:
    return [
        {"role": "system", "content": system_prompt or SYSTEM_INSTRUCTION},
        {"role": "user", "content": build_turn_prompt(request)},
    ]


async def call_judge(
    config: ModelConfig,
    request: TurnRequest,
    system_prompt: str = "",
) -> TurnVerdict:
    """调用裁判模型获取结构化判定。异常向上抛出由调用方处理。"""
    client = AsyncOpenAI(base_url=config.base_url, api_key=config.api_key)
    completion = await client.chat.completions.parse(
        model=config.model,
        messages=build_messages(request, system_prompt),
        response_format=TurnVerdict,
        timeout=LLM_TIMEOUT,
    )

    parsed = completion.choices[0].message.parsed
    if parsed is None:
        raise ValueError("裁判模型返回结果解析失败")
    return parsed


async def resolve_turn(config: ModelConfig, request: TurnRequest) -> TurnResult:
    """判定一回合，并回显双方行动。"""
    verdict = await call_judge(config, request)
    return TurnResult(
        winner=verdict.winner,
        damage=verdict.damage,
        narration=verdict.narration,
        crit=verdict.crit,
        p1_action=request.p1_action,
        p2_action=request.p2_action,
    )


def build_illustration_prompt(request: IllustrationRequest) -> str:
    return f"""\
Create a dynamic, high-quality anime-style battle illustration.
Scene description: Two powerful characters clashing.
Character 1 ({request.p1_name}): Executing action "{request.p1_action}".
Character 2 ({request.p2_name}): Executing action "{request.p2_action}".
Result/Atmosphere: {request.narration}
Style: Shonen Manga/Anime, vibrant colors, dramatic lighting, impact effects, wide aspect ratio.
No text overlays."""


async def call_illustrator(config: ModelConfig, request: IllustrationRequest) -> str | None:
    """生成战斗插图，返回 data URL；模型没有给出图片时返回 None。

    异常向上抛出由调用方处理。
    """
    client = AsyncOpenAI(base_url=config.base_url, api_key=config.api_key)
    response = await client.images.generate(
        model=config.model,
        prompt=build_illustration_prompt(request),
        n=1,
        size=IMAGE_SIZE,
        timeout=IMAGE_TIMEOUT,
    )

    for image in response.data or []:
        if image.b64_json:
            return f"data:image/png;base64,{image.b64_json}"
        if image.url:
            return image.url
    return None
