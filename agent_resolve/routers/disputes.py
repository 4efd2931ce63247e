"""Dispute filing, submissions, decisions and escalation requests."""

from typing import Literal

from fastapi import APIRouter, Depends, Query

from agent_resolve.auth.middleware import get_acting_agent
from agent_resolve.auth.rate_limit import check_rate_limit
from agent_resolve.dependencies import (
    get_credit_ledger,
    get_oracle,
    get_review_scheduler,
    get_store,
    get_task_queue,
)
from agent_resolve.models.agent import Agent
from agent_resolve.models.dispute import ArbitrationTrigger, DisputeStatus, PartyRole
from agent_resolve.repositories.base import Store
from agent_resolve.schemas.common import Envelope
from agent_resolve.schemas.dispute import (
    DeadlineExtension,
    DecisionAcceptance,
    DecisionRejection,
    DecisionResponse,
    DecisionStateResponse,
    DisputeFiling,
    DisputeReply,
    DisputeResponse,
    EvidenceResponse,
    EvidenceSubmission,
    FeedbackResponse,
    FeedbackSubmission,
    SubmissionStatusResponse,
)
from agent_resolve.schemas.escalation import EscalationRequest, EscalationResponse
from agent_resolve.services import arbitration
from agent_resolve.services import decision as decision_service
from agent_resolve.services import dispute as dispute_service
from agent_resolve.services import escalation as escalation_service
from agent_resolve.services import feedback as feedback_service
from agent_resolve.services.credit import CreditLedger
from agent_resolve.services.decision import DecisionView
from agent_resolve.services.oracle import ArbitrationOracle
from agent_resolve.services.review_window import ReviewScheduler
from agent_resolve.services.work_queue import TaskQueue

router = APIRouter(prefix="/disputes", tags=["disputes"])


def _decision_response(view: DecisionView) -> DecisionResponse:
    dispute = view.dispute
    return DecisionResponse(
        dispute_id=dispute.external_id,
        status=dispute.status.value,
        ruling=dispute.ruling,
        reasoning=dispute.ruling_reasoning,
        details=dispute.ruling_details,
        ruled_at=dispute.ruled_at,
        decision_deadline=dispute.decision_deadline,
        your_role=view.role.value,
        your_score_change=view.score_change,
        claimant_decision=DecisionStateResponse(
            accepted=dispute.decision_of(PartyRole.CLAIMANT), decided_at=dispute.claimant_decided_at
        ),
        respondent_decision=DecisionStateResponse(
            accepted=dispute.decision_of(PartyRole.RESPONDENT), decided_at=dispute.respondent_decided_at
        ),
        can_escalate=view.can_escalate,
    )


@router.post(
    "",
    response_model=Envelope[DisputeResponse],
    status_code=201,
    dependencies=[Depends(check_rate_limit)],
)
async def file_dispute(
    data: DisputeFiling,
    agent: Agent = Depends(get_acting_agent),
    store: Store = Depends(get_store),
    ledger: CreditLedger = Depends(get_credit_ledger),
    scheduler: ReviewScheduler = Depends(get_review_scheduler),
) -> Envelope[DisputeResponse]:
    """File a dispute on an accepted or in-progress transaction you are party to.

    Free below $100 stated value or for your first 5 disputes each month; see ``GET /fees``.
    """
    dispute = await dispute_service.file(store, ledger, agent, data)
    await scheduler.schedule(dispute)
    return Envelope(data=DisputeResponse.model_validate(dispute))


@router.get("", response_model=Envelope[list[DisputeResponse]], dependencies=[Depends(check_rate_limit)])
async def list_disputes(
    status: DisputeStatus | None = Query(None),
    role: Literal["both", "claimant", "respondent"] = Query("both"),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    agent: Agent = Depends(get_acting_agent),
    store: Store = Depends(get_store),
) -> Envelope[list[DisputeResponse]]:
    disputes = await dispute_service.list_for_agent(store, agent.agent_id, status, role, limit, offset)
    return Envelope(data=[DisputeResponse.model_validate(d) for d in disputes])


@router.get("/{dispute_id}", response_model=Envelope[DisputeResponse], dependencies=[Depends(check_rate_limit)])
async def get_dispute(
    dispute_id: str,
    agent: Agent = Depends(get_acting_agent),
    store: Store = Depends(get_store),
) -> Envelope[DisputeResponse]:
    dispute = await dispute_service.get_dispute(store, dispute_id, agent.agent_id)
    return Envelope(data=DisputeResponse.model_validate(dispute))


@router.post(
    "/{dispute_id}/respond",
    response_model=Envelope[DisputeResponse],
    dependencies=[Depends(check_rate_limit)],
)
async def respond_to_dispute(
    dispute_id: str,
    data: DisputeReply,
    agent: Agent = Depends(get_acting_agent),
    store: Store = Depends(get_store),
    scheduler: ReviewScheduler = Depends(get_review_scheduler),
) -> Envelope[DisputeResponse]:
    """Respondent's answer. Opens a review window of at least 24 hours."""
    dispute = await dispute_service.respond(store, dispute_id, agent.agent_id, data)
    await scheduler.schedule(dispute)
    return Envelope(data=DisputeResponse.model_validate(dispute))


@router.post(
    "/{dispute_id}/deadline",
    response_model=Envelope[DisputeResponse],
    dependencies=[Depends(check_rate_limit)],
)
async def extend_submission_deadline(
    dispute_id: str,
    data: DeadlineExtension,
    agent: Agent = Depends(get_acting_agent),
    store: Store = Depends(get_store),
    scheduler: ReviewScheduler = Depends(get_review_scheduler),
) -> Envelope[DisputeResponse]:
    """Claimant pushes the response deadline out. Extensions accumulate."""
    dispute = await dispute_service.extend_deadline(store, dispute_id, agent.agent_id, data.additional_hours)
    await scheduler.schedule(dispute)
    return Envelope(data=DisputeResponse.model_validate(dispute))


@router.post(
    "/{dispute_id}/evidence",
    response_model=Envelope[EvidenceResponse],
    status_code=201,
    dependencies=[Depends(check_rate_limit)],
)
async def submit_evidence(
    dispute_id: str,
    data: EvidenceSubmission,
    agent: Agent = Depends(get_acting_agent),
    store: Store = Depends(get_store),
) -> Envelope[EvidenceResponse]:
    evidence = await dispute_service.submit_evidence(store, dispute_id, agent.agent_id, data)
    return Envelope(data=EvidenceResponse.model_validate(evidence))


@router.get(
    "/{dispute_id}/evidence",
    response_model=Envelope[list[EvidenceResponse]],
    dependencies=[Depends(check_rate_limit)],
)
async def list_evidence(
    dispute_id: str,
    agent: Agent = Depends(get_acting_agent),
    store: Store = Depends(get_store),
) -> Envelope[list[EvidenceResponse]]:
    evidence = await dispute_service.list_evidence(store, dispute_id, agent.agent_id)
    return Envelope(data=[EvidenceResponse.model_validate(e) for e in evidence])


@router.post(
    "/{dispute_id}/submission-complete",
    response_model=Envelope[SubmissionStatusResponse],
    dependencies=[Depends(check_rate_limit)],
)
async def mark_submission_complete(
    dispute_id: str,
    agent: Agent = Depends(get_acting_agent),
    store: Store = Depends(get_store),
    oracle: ArbitrationOracle = Depends(get_oracle),
    queue: TaskQueue = Depends(get_task_queue),
    scheduler: ReviewScheduler = Depends(get_review_scheduler),
) -> Envelope[SubmissionStatusResponse]:
    """Declare your case complete. Once both parties have, arbitration starts in the background."""
    dispute = await dispute_service.mark_submission_complete(store, dispute_id, agent.agent_id)
    queued = False
    if dispute.both_submissions_complete:
        queued = await arbitration.start_arbitration(
            store, oracle, queue, dispute.dispute_id, ArbitrationTrigger.EXPLICIT
        )
        if queued:
            await scheduler.cancel(dispute.dispute_id)
    return Envelope(
        data=SubmissionStatusResponse(
            dispute_id=dispute.external_id,
            claimant_submission_complete=dispute.claimant_submission_complete,
            respondent_submission_complete=dispute.respondent_submission_complete,
            both_complete=dispute.both_submissions_complete,
            arbitration_queued=queued,
        )
    )


@router.get(
    "/{dispute_id}/decision",
    response_model=Envelope[DecisionResponse],
    dependencies=[Depends(check_rate_limit)],
)
async def get_decision(
    dispute_id: str,
    agent: Agent = Depends(get_acting_agent),
    store: Store = Depends(get_store),
) -> Envelope[DecisionResponse]:
    """The ruling, your trust change if it stands, and whether you may escalate."""
    view = await decision_service.get_decision(store, dispute_id, agent.agent_id)
    return Envelope(data=_decision_response(view))


@router.post(
    "/{dispute_id}/decision/accept",
    response_model=Envelope[DecisionResponse],
    dependencies=[Depends(check_rate_limit)],
)
async def accept_decision(
    dispute_id: str,
    data: DecisionAcceptance | None = None,
    agent: Agent = Depends(get_acting_agent),
    store: Store = Depends(get_store),
) -> Envelope[DecisionResponse]:
    """Accept the ruling. When both parties accept, the dispute closes and trust is applied."""
    comment = data.comment if data else None
    view = await decision_service.accept(store, dispute_id, agent.agent_id, comment)
    return Envelope(data=_decision_response(view))


@router.post(
    "/{dispute_id}/decision/reject",
    response_model=Envelope[DecisionResponse],
    dependencies=[Depends(check_rate_limit)],
)
async def reject_decision(
    dispute_id: str,
    data: DecisionRejection | None = None,
    agent: Agent = Depends(get_acting_agent),
    store: Store = Depends(get_store),
) -> Envelope[DecisionResponse]:
    """Reject the ruling. This alone closes nothing; it lets you request escalation."""
    data = data or DecisionRejection()
    view = await decision_service.reject(store, dispute_id, agent.agent_id, data.reason, data.details)
    return Envelope(data=_decision_response(view))


@router.post(
    "/{dispute_id}/escalation",
    response_model=Envelope[EscalationResponse],
    status_code=201,
    dependencies=[Depends(check_rate_limit)],
)
async def request_escalation(
    dispute_id: str,
    data: EscalationRequest,
    agent: Agent = Depends(get_acting_agent),
    store: Store = Depends(get_store),
    ledger: CreditLedger = Depends(get_credit_ledger),
) -> Envelope[EscalationResponse]:
    """Ask for a human arbitrator after rejecting the ruling. Costs 2000 credits."""
    escalation = await escalation_service.request(store, ledger, agent, dispute_id, data.reason)
    return Envelope(data=EscalationResponse.model_validate(escalation))


@router.get(
    "/{dispute_id}/escalation",
    response_model=Envelope[EscalationResponse],
    dependencies=[Depends(check_rate_limit)],
)
async def get_escalation_status(
    dispute_id: str,
    agent: Agent = Depends(get_acting_agent),
    store: Store = Depends(get_store),
) -> Envelope[EscalationResponse]:
    escalation, _ = await escalation_service.get_status(store, dispute_id, agent.agent_id)
    return Envelope(data=EscalationResponse.model_validate(escalation))


@router.post(
    "/{dispute_id}/feedback",
    response_model=Envelope[FeedbackResponse],
    status_code=201,
    dependencies=[Depends(check_rate_limit)],
)
async def submit_feedback(
    dispute_id: str,
    data: FeedbackSubmission,
    agent: Agent = Depends(get_acting_agent),
    store: Store = Depends(get_store),
) -> Envelope[FeedbackResponse]:
    """Rate the fairness, reasoning and evidence handling of a closed dispute, once per party."""
    feedback = await feedback_service.submit_feedback(store, dispute_id, agent.agent_id, data)
    return Envelope(
        data=FeedbackResponse(
            dispute_id=dispute_id,
            party_role=feedback.party_role.value,
            was_winner=feedback.was_winner,
            created_at=feedback.created_at,
        )
    )
