"""Decision-oracle adapter.

The oracle is an optional external judge consulted by the aggregator
above its pre-score gate. It receives a compact brief and answers with
``{direction, confidence, bet_amount, reasoning}``. Responses are decoded
strictly into a ``BetDecision`` or ``HoldDecision``; anything malformed
raises ``OracleResponseError`` rather than being defaulted.

The oracle never places bets itself: a suggested amount is always
clamped to the Kelly cap by the caller.
"""

import json
import re
from dataclasses import asdict, dataclass, field
from typing import Any, Literal, Optional, Protocol, Union

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

logger = structlog.get_logger(__name__)

ANTHROPIC_API_BASE = "https://api.anthropic.com/v1"
ANTHROPIC_VERSION = "2023-06-01"

SYSTEM_PROMPT = (
    "You are a risk-aware trading assistant for 5-minute BTC up/down binary "
    "markets. Paper trading only. Given the brief, reply with a single JSON "
    'object and nothing else: {"direction": "up"|"down"|"hold", '
    '"confidence": "low"|"medium"|"high", "bet_amount": <USDC number, 0 for '
    'hold>, "reasoning": "<one or two sentences>"}.'
)


class OracleError(Exception):
    """The oracle could not be reached or refused the request."""


class OracleResponseError(OracleError):
    """The oracle answered with a payload that does not decode."""


# =============================================================================
# Decisions
# =============================================================================


class BetDecision(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["bet"] = "bet"
    direction: Literal["up", "down"]
    amount: float = Field(gt=0)
    confidence: Literal["low", "medium", "high"]
    reasoning: str


class HoldDecision(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["hold"] = "hold"
    confidence: Literal["low", "medium", "high"]
    reasoning: str


OracleDecision = Union[BetDecision, HoldDecision]


class OracleResponse(BaseModel):
    """Wire shape of an oracle answer."""

    model_config = ConfigDict(extra="forbid", strict=True)

    direction: Literal["up", "down", "hold"]
    confidence: Literal["low", "medium", "high"]
    bet_amount: Optional[float] = Field(default=None, ge=0)
    reasoning: str = Field(min_length=1)

    @model_validator(mode="after")
    def _bet_needs_amount(self) -> "OracleResponse":
        if self.direction != "hold" and not self.bet_amount:
            raise ValueError("a directional answer requires a positive bet_amount")
        return self

    def to_decision(self) -> OracleDecision:
        if self.direction == "hold":
            return HoldDecision(confidence=self.confidence, reasoning=self.reasoning)
        return BetDecision(
            direction=self.direction,
            amount=self.bet_amount,
            confidence=self.confidence,
            reasoning=self.reasoning,
        )


_FENCED = re.compile(r"^```(?:json)?\s*([\s\S]*?)\s*```$", re.IGNORECASE)


def decode_decision(payload: Union[str, dict[str, Any]]) -> OracleDecision:
    """
    Strictly decode an oracle answer.

    Accepts a dict or a JSON string, optionally wrapped in a single
    markdown code fence. Raises OracleResponseError on anything else.
    """
    if isinstance(payload, str):
        text = payload.strip()
        fenced = _FENCED.match(text)
        if fenced:
            text = fenced.group(1)
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as e:
            raise OracleResponseError(f"oracle returned invalid JSON: {e}") from e

    if not isinstance(payload, dict):
        raise OracleResponseError("oracle answer is not a JSON object")
    try:
        return OracleResponse.model_validate(payload).to_decision()
    except ValidationError as e:
        raise OracleResponseError(f"oracle answer rejected: {e.error_count()} errors") from e


@dataclass
class OracleBrief:
    """Compact context handed to the oracle."""

    model_id: int
    model_name: str
    signal_weights: dict[str, float]
    signals: dict[str, float]
    score: float
    direction: str
    confidence: str
    market: dict[str, Any] = field(default_factory=dict)
    performance: dict[str, Any] = field(default_factory=dict)
    kelly_cap: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# =============================================================================
# Implementations
# =============================================================================


class DecisionOracle(Protocol):
    async def decide(self, brief: OracleBrief) -> OracleDecision: ...


class NullOracle:
    """Used when no oracle is configured; always holds with low confidence."""

    async def decide(self, brief: OracleBrief) -> OracleDecision:
        return HoldDecision(confidence="low", reasoning="oracle not configured")


class AnthropicDecisionOracle:
    """Asks a Claude model through the Messages API."""

    def __init__(
        self,
        api_key: str,
        model: str,
        timeout: float = 8.0,
        client: httpx.AsyncClient | None = None,
        base_url: str = ANTHROPIC_API_BASE,
        max_tokens: int = 300,
    ):
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self.base_url = base_url.rstrip("/")
        self.max_tokens = max_tokens
        self._client = client

    def _build_headers(self) -> dict[str, str]:
        return {
            "x-api-key": self.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "content-type": "application/json",
        }

    def _build_payload(self, brief: OracleBrief) -> dict[str, Any]:
        return {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "temperature": 0.0,
            "system": SYSTEM_PROMPT,
            "messages": [
                {
                    "role": "user",
                    "content": json.dumps(brief.to_dict(), sort_keys=True, default=str),
                }
            ],
        }

    async def _post(self, payload: dict[str, Any]) -> httpx.Response:
        url = f"{self.base_url}/messages"
        if self._client is not None:
            return await self._client.post(
                url, headers=self._build_headers(), json=payload, timeout=self.timeout
            )
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(url, headers=self._build_headers(), json=payload)

    async def decide(self, brief: OracleBrief) -> OracleDecision:
        try:
            resp = await self._post(self._build_payload(brief))
        except httpx.TimeoutException as e:
            raise OracleError("oracle request timed out") from e
        except httpx.HTTPError as e:
            raise OracleError(f"oracle request failed: {e}") from e

        if resp.status_code != 200:
            raise OracleError(f"oracle API error ({resp.status_code}): {resp.text[:200]}")

        try:
            data = resp.json()
        except ValueError as e:
            raise OracleResponseError("oracle API returned a non-JSON body") from e

        text = "".join(
            block.get("text", "")
            for block in data.get("content") or []
            if isinstance(block, dict) and block.get("type") == "text"
        )
        if not text.strip():
            raise OracleResponseError("oracle returned no text content")

        decision = decode_decision(text)
        logger.info(
            "oracle_decision",
            model_id=brief.model_id,
            kind=decision.kind,
            confidence=decision.confidence,
        )
        return decision
