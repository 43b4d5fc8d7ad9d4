from typing import Any

import httpx

from models import IllustrationRequest, IllustrationResponse, TurnRequest, TurnResult

HTTP_TIMEOUT = 120.0
RESOLVE_TURN_PATH = "/api/resolve-turn"
ILLUSTRATION_PATH = "/api/illustration"


class GameApiClient:
    """通过 HTTP 调用裁判与插图接口。

    非 2xx 抛 httpx.HTTPStatusError，响应体不合法抛 ValueError / ValidationError，
    由 MatchController 负责降级。
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = HTTP_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    async def _post(self, path: str, payload: dict[str, Any]) -> Any:
        async with httpx.AsyncClient(
            base_url=self.base_url, timeout=self.timeout, transport=self.transport
        ) as client:
            response = await client.post(path, json=payload)
            response.raise_for_status()
            return response.json()

    async def resolve_turn(self, request: TurnRequest) -> TurnResult:
        data = await self._post(RESOLVE_TURN_PATH, request.model_dump(mode="json", by_alias=True))
        return TurnResult.model_validate(data)

    async def generate_illustration(self, request: IllustrationRequest) -> str | None:
        data = await self._post(ILLUSTRATION_PATH, request.model_dump(mode="json", by_alias=True))
        return IllustrationResponse.model_validate(data).image_url
