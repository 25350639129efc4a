from fastapi import APIRouter, HTTPException
from loguru import logger

from tallybot.core.balances import compute_balances
from tallybot.deps import orchestrator, repo
from tallybot.models.schemas import (
    AddGhostRequest,
    AddMemberRequest,
    Balance,
    CreateGroupRequest,
    Expense,
    GhostMember,
    Group,
    InjectMessageRequest,
    InboundMessage,
    OutboundMessage,
    Participant,
    UpdateAliasesRequest,
)

router = APIRouter()


@router.get("/health")
def health():
    return {"status": "ok"}


@router.post("/messages", response_model=list[OutboundMessage])
async def inject_message(request: InjectMessageRequest):
    """Run a message through the engine as if it came from a chat channel."""
    if repo.get_participant(request.user_id) is None:
        raise HTTPException(status_code=404, detail="Participant not found")
    logger.info("Injected message from {} ({} chars)", request.user_id, len(request.text))
    return await orchestrator.handle_message(
        InboundMessage(user_id=request.user_id, text=request.text, message_id=request.message_id)
    )


@router.get("/groups/{group_id}/balances", response_model=list[Balance])
def group_balances(group_id: str):
    group = repo.get_group(group_id)
    if group is None:
        raise HTTPException(status_code=404, detail="Group not found")
    names = {entry.id: entry.name for entry in repo.roster(group)}
    return compute_balances(
        repo.expenses_for_group(group_id),
        repo.payments_for_group(group_id),
        group.roster_ids,
        names,
    )


@router.get("/groups/{group_id}/expenses", response_model=list[Expense])
def group_expenses(group_id: str, limit: int | None = None):
    if repo.get_group(group_id) is None:
        raise HTTPException(status_code=404, detail="Group not found")
    return repo.expenses_for_group(group_id, limit=limit)


@router.patch("/participants/{participant_id}/aliases", response_model=Participant)
def update_aliases(participant_id: str, request: UpdateAliasesRequest):
    updated = repo.set_aliases(participant_id, request.aliases)
    if updated is None:
        raise HTTPException(status_code=404, detail="Participant not found")
    logger.info("Updated aliases for {}: {}", participant_id, updated.aliases)
    return updated


@router.post("/groups/{group_id}/ghosts/{ghost_id}/claim")
def claim_ghost(group_id: str, ghost_id: str, participant_id: str):
    if repo.get_participant(participant_id) is None:
        raise HTTPException(status_code=404, detail="Participant not found")
    try:
        rewritten = repo.claim_ghost(group_id, ghost_id, participant_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="Ghost member not found")
    return {"detail": "Ghost member claimed", "rewritten": rewritten}


@router.post("/groups", response_model=Group)
def create_group(request: CreateGroupRequest):
    members = list(dict.fromkeys([request.created_by, *request.members]))
    missing = [pid for pid in members if repo.get_participant(pid) is None]
    if missing:
        raise HTTPException(status_code=404, detail=f"Participant not found: {', '.join(missing)}")
    group = repo.add_group(Group(name=request.name, members=members, created_by=request.created_by))
    logger.info("Created group {} ({}) with {} members", group.id, group.name, len(members))
    return group


@router.post("/groups/{group_id}/members", response_model=Group)
def add_member(group_id: str, request: AddMemberRequest):
    if repo.get_participant(request.participant_id) is None:
        raise HTTPException(status_code=404, detail="Participant not found")
    group = repo.add_member(group_id, request.participant_id)
    if group is None:
        raise HTTPException(status_code=404, detail="Group not found")
    return group


@router.post("/groups/{group_id}/ghosts", response_model=GhostMember)
def add_ghost(group_id: str, request: AddGhostRequest):
    try:
        ghost = repo.add_ghost(group_id, request.name, request.aliases)
    except KeyError:
        raise HTTPException(status_code=404, detail="Group not found")
    logger.info("Added ghost member {} to group {}", ghost.id, group_id)
    return ghost
