"""REST API routes for QuickShare."""

import logging
import os

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from transfer.errors import ChannelError, IllegalTransition, InvalidBatch

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

# Injected by main.py at startup
_transfer_manager = None


def init_routes(transfer_manager) -> None:
    """Inject service dependencies into the routes module."""
    global _transfer_manager
    _transfer_manager = transfer_manager


# --- Session ---

class ConnectBody(BaseModel):
    host: str
    port: int = Field(gt=0, lt=65536)


@router.get("/session")
async def get_session():
    """Return the current session snapshot."""
    return _transfer_manager.session_info().model_dump(mode="json")


@router.post("/connect")
async def connect(body: ConnectBody):
    """Connect to a peer; replaces any current connection."""
    try:
        info = await _transfer_manager.connect(body.host.strip(), body.port)
    except ChannelError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return info.model_dump(mode="json")


@router.post("/disconnect")
async def disconnect():
    await _transfer_manager.disconnect()
    return {"status": "disconnected"}


# --- Batches ---

class BatchBody(BaseModel):
    file_paths: list[str]


class SelectionBody(BaseModel):
    name: str
    accepted: bool


class DecisionBody(BaseModel):
    accepted_files: list[str] | None = None


@router.post("/batch")
async def propose_batch(body: BatchBody):
    """Offer files from the host's disk to the connected peer."""
    valid_paths = []
    for path in body.file_paths:
        if os.path.isfile(path):
            valid_paths.append(path)
        else:
            logger.warning(f"Skipping invalid file path: {path}")

    if not valid_paths:
        raise HTTPException(status_code=400, detail="No valid files selected")

    try:
        proposal = await _transfer_manager.send_files(valid_paths)
    except InvalidBatch as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ChannelError as e:
        raise HTTPException(status_code=502, detail=str(e))

    return {
        "proposal": proposal.model_dump(mode="json"),
        "message": f"Proposed {proposal.total_count} file(s)",
    }


@router.get("/batch/pending")
async def pending_batch():
    """The incoming proposal awaiting a decision, or null."""
    return {"pending": _transfer_manager.pending_request()}


@router.post("/batch/pending/select")
async def select_file(body: SelectionBody):
    try:
        selected = _transfer_manager.select_file(body.name, body.accepted)
    except IllegalTransition as e:
        raise HTTPException(status_code=409, detail=str(e))
    except InvalidBatch as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"selected": selected}


class ToggleBody(BaseModel):
    name: str


class SelectAllBody(BaseModel):
    accepted: bool


@router.post("/batch/pending/toggle")
async def toggle_file(body: ToggleBody):
    try:
        selected = _transfer_manager.toggle_file(body.name)
    except IllegalTransition as e:
        raise HTTPException(status_code=409, detail=str(e))
    except InvalidBatch as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"selected": selected}


@router.post("/batch/pending/select-all")
async def select_all(body: SelectAllBody):
    """Accept or reject every offered file at once."""
    try:
        selected = _transfer_manager.select_all(body.accepted)
    except IllegalTransition as e:
        raise HTTPException(status_code=409, detail=str(e))
    except InvalidBatch as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"selected": selected}


@router.post("/batch/pending/decision")
async def decide(body: DecisionBody):
    """Send the decision; an empty selection declines the batch."""
    try:
        decision = await _transfer_manager.respond_to_request(body.accepted_files)
    except IllegalTransition as e:
        raise HTTPException(status_code=409, detail=str(e))
    except InvalidBatch as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ChannelError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return {
        "status": "accepted" if decision.granted else "rejected",
        "accepted_files": list(decision.accepted_files),
    }


# --- History ---

@router.get("/history")
async def list_history():
    return {"history": [r.model_dump(mode="json") for r in _transfer_manager.get_history()]}


@router.delete("/history")
async def clear_history():
    await _transfer_manager.clear_history()
    return {"status": "cleared"}


# --- Settings ---

class SettingsBody(BaseModel):
    save_dir: str | None = None


@router.get("/settings")
async def get_settings():
    return {
        "peer_id": _transfer_manager.session_info().peer_id,
        "save_dir": _transfer_manager.save_dir,
    }


@router.put("/settings")
async def update_settings(body: SettingsBody):
    if body.save_dir is not None:
        try:
            _transfer_manager.save_dir = body.save_dir
        except OSError as e:
            raise HTTPException(
                status_code=400, detail=f"Invalid directory: {e}"
            )
    return {"status": "updated"}
