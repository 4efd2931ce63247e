"""Arbitration oracle adapter.

The oracle is a trusted, centrally operated decision service. We send it the
assembled case and get back a ruling. Anything that is not a well-formed ruling
is treated as a failed call; we never guess one.
"""

import abc
import json
import logging
import re
from dataclasses import asdict, dataclass, field

import httpx
from pydantic import AliasChoices, BaseModel, Field, ValidationError, field_validator

from agent_resolve.errors import ExternalServiceError
from agent_resolve.models.dispute import Ruling

logger = logging.getLogger(__name__)

_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)


@dataclass
class EvidenceItem:
    submitted_by: str  # "claimant" | "respondent"
    evidence_type: str
    title: str
    content: str


@dataclass
class ArbitrationRequest:
    dispute_id: str
    transaction_title: str
    transaction_description: str | None
    transaction_terms: dict
    stated_value: int | None
    claim_type: str
    claim_summary: str
    claim_details: str | None
    requested_resolution: str
    response_summary: str | None
    response_details: str | None
    claimant_trust_score: int
    respondent_trust_score: int
    evidence: list[EvidenceItem] = field(default_factory=list)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["case_summary"] = render_case(self)
        return data


@dataclass
class ArbitrationResult:
    ruling: Ruling
    reasoning: str
    details: dict
    # Set only when the oracle prices the outcome itself
    claimant_score_change: int | None = None
    respondent_score_change: int | None = None


def render_case(request: ArbitrationRequest) -> str:
    """Plain-text case file for oracles that reason over prose."""
    if request.evidence:
        evidence = "\n\n".join(
            f"Evidence {i} ({item.submitted_by}):\n"
            f"  Type: {item.evidence_type}\n"
            f"  Title: {item.title}\n"
            f"  Content: {item.content}"
            for i, item in enumerate(request.evidence, start=1)
        )
    else:
        evidence = "No additional evidence submitted."

    if request.response_summary:
        response = (
            f"Summary: {request.response_summary}\n"
            f"Details: {request.response_details or 'Not provided'}"
        )
    else:
        response = "No response submitted (respondent did not reply within deadline)"

    return (
        "DISPUTE CASE FOR ARBITRATION\n\n"
        "=== TRANSACTION DETAILS ===\n"
        f"Title: {request.transaction_title}\n"
        f"Description: {request.transaction_description or 'Not provided'}\n"
        f"Terms: {json.dumps(request.transaction_terms, indent=2, sort_keys=True)}\n\n"
        "=== CLAIM ===\n"
        f"Type: {request.claim_type}\n"
        f"Summary: {request.claim_summary}\n"
        f"Details: {request.claim_details or 'Not provided'}\n"
        f"Requested Resolution: {request.requested_resolution}\n"
        f"Claimant Trust Score: {request.claimant_trust_score}/100\n\n"
        "=== RESPONSE ===\n"
        f"{response}\n"
        f"Respondent Trust Score: {request.respondent_trust_score}/100\n\n"
        "=== EVIDENCE ===\n"
        f"{evidence}"
    )


class _VerdictDetails(BaseModel):
    confidence: float = 0.7
    key_factors: list[str] = Field(default_factory=list, validation_alias=AliasChoices("key_factors", "keyFactors"))
    mitigating_factors: list[str] = Field(
        default_factory=list, validation_alias=AliasChoices("mitigating_factors", "mitigatingFactors")
    )
    recommendation: str = "Follow the ruling as stated."

    @field_validator("confidence")
    @classmethod
    def clamp_confidence(cls, v: float) -> float:
        return max(0.0, min(1.0, v))


class _Verdict(BaseModel):
    ruling: Ruling
    reasoning: str = "Ruling based on available evidence."
    details: _VerdictDetails = Field(default_factory=_VerdictDetails)
    claimant_score_change: int | None = Field(
        None, validation_alias=AliasChoices("claimant_score_change", "claimantScoreChange")
    )
    respondent_score_change: int | None = Field(
        None, validation_alias=AliasChoices("respondent_score_change", "respondentScoreChange")
    )


def parse_verdict(payload: object) -> ArbitrationResult:
    """Accept a verdict object, or text wrapping one under ``content``.

    Raises ExternalServiceError for anything without a valid ruling.
    """
    if isinstance(payload, dict) and isinstance(payload.get("content"), str):
        payload = payload["content"]
    if isinstance(payload, str):
        match = _JSON_OBJECT.search(payload)
        if match is None:
            raise ExternalServiceError("Oracle response contained no verdict", code="ORACLE_BAD_RESPONSE")
        try:
            payload = json.loads(match.group(0))
        except json.JSONDecodeError as e:
            raise ExternalServiceError(
                f"Oracle verdict is not valid JSON: {e}", code="ORACLE_BAD_RESPONSE"
            ) from e

    try:
        verdict = _Verdict.model_validate(payload)
    except ValidationError as e:
        raise ExternalServiceError(
            f"Oracle verdict rejected: {e.errors()[0]['msg']}", code="ORACLE_BAD_RESPONSE"
        ) from e

    return ArbitrationResult(
        ruling=verdict.ruling,
        reasoning=verdict.reasoning,
        details={
            "confidence": verdict.details.confidence,
            "key_factors": verdict.details.key_factors,
            "mitigating_factors": verdict.details.mitigating_factors,
            "recommendation": verdict.details.recommendation,
        },
        claimant_score_change=verdict.claimant_score_change,
        respondent_score_change=verdict.respondent_score_change,
    )


class ArbitrationOracle(abc.ABC):
    @abc.abstractmethod
    async def arbitrate(self, request: ArbitrationRequest) -> ArbitrationResult:
        """Raises ExternalServiceError on any failure."""


class HttpArbitrationOracle(ArbitrationOracle):
    def __init__(self, url: str, api_key: str, timeout: float) -> None:
        self.url = url
        self.api_key = api_key
        self.timeout = timeout

    async def arbitrate(self, request: ArbitrationRequest) -> ArbitrationResult:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            try:
                resp = await client.post(self.url, headers=headers, json=request.to_dict())
            except httpx.TimeoutException:
                logger.error("Arbitration oracle timed out for dispute %s", request.dispute_id)
                raise ExternalServiceError("Arbitration oracle timed out", code="ORACLE_TIMEOUT")
            except httpx.RequestError as e:
                logger.error("Arbitration oracle request failed for dispute %s: %s", request.dispute_id, e)
                raise ExternalServiceError("Failed to reach arbitration oracle", code="ORACLE_UNAVAILABLE")

        if resp.status_code != 200:
            logger.error(
                "Arbitration oracle returned %d for dispute %s: %s",
                resp.status_code, request.dispute_id, resp.text[:500],
            )
            raise ExternalServiceError(
                f"Arbitration oracle failed (status {resp.status_code})", code="ORACLE_ERROR"
            )

        try:
            payload = resp.json()
        except ValueError:
            payload = resp.text
        return parse_verdict(payload)
