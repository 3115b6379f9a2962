"""FastAPI application exposing stored chats and their vaults."""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from vault.records import Store
from vault.reconcile import BranchReconciler

from .config import VaultSettings, load_config
from .memory import ChatDocuments
from .notify import LogNotifier
from .service import ReconcileOutcome, VaultService


# -----------------------------
# Pydantic request/response
# -----------------------------
class ChatMessage(BaseModel):
    mes: str = Field(..., min_length=1, description="Message text.")
    name: Optional[str] = Field(default=None, description="Speaker name.")
    is_user: bool = Field(default=True)


class NewMemory(BaseModel):
    summary: str = Field(..., min_length=1)
    message_ids: List[int] = Field(..., min_length=1)


class ReconcileRequest(BaseModel):
    # None means "use the stored transcript"
    transcript_length: Optional[int] = Field(default=None, ge=0)


class BranchRequest(BaseModel):
    length: int = Field(..., ge=0)


class ReconcileResponse(BaseModel):
    prunedMemories: int
    prunedCharacterEvents: int
    prunedRelationships: int
    transcript_length: int
    changed: bool
    saved: bool


# -----------------------------
# Utilities
# -----------------------------
def _make_documents(settings: VaultSettings, notifier: LogNotifier) -> ChatDocuments:
    return ChatDocuments(settings.data_dir, notifier=notifier)


def _outcome_response(outcome: ReconcileOutcome) -> ReconcileResponse:
    return ReconcileResponse(
        **outcome.report.to_dict(),
        transcript_length=outcome.transcript_length,
        changed=outcome.changed,
        saved=outcome.saved,
    )


# -----------------------------
# App factory
# -----------------------------
def create_app(
    config_path: Optional[str] = None,
    documents: Optional[ChatDocuments] = None,
    notifier: Optional[LogNotifier] = None,
) -> FastAPI:
    cfg = load_config(config_path)
    settings = VaultSettings.from_config(cfg)

    notifier = notifier or LogNotifier(max_items=settings.notice_max_items)
    documents = documents or _make_documents(settings, notifier)
    if documents.notifier is None:
        documents.notifier = notifier
    service = VaultService(documents, BranchReconciler(verbose=settings.debug_mode))

    app = FastAPI(title="Chat Vault Server", version="0.1.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def _require_chat(chat_id: str) -> None:
        if not documents.exists(chat_id):
            raise HTTPException(status_code=404, detail=f"Unknown chat: {chat_id}")

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {
            "ok": True,
            "data_dir": str(documents.root),
            "active_chat": documents.active_chat_id,
            "debug_mode": settings.debug_mode,
        }

    @app.get("/config")
    def get_config() -> JSONResponse:
        return JSONResponse(dict(cfg))

    @app.get("/notices")
    def notices() -> Dict[str, Any]:
        return {"notices": notifier.recent()}

    @app.get("/chats")
    def list_chats() -> Dict[str, Any]:
        return {"chats": documents.list_chats(), "active": documents.active_chat_id}

    @app.post("/chats/{chat_id}/open")
    def open_chat(chat_id: str) -> Dict[str, Any]:
        doc = documents.open(chat_id)
        return {"chat_id": chat_id, "transcript_length": len(doc.chat)}

    @app.delete("/chats/{chat_id}")
    def delete_chat(chat_id: str) -> Dict[str, Any]:
        _require_chat(chat_id)
        return {"deleted": documents.delete(chat_id)}

    @app.post("/chats/{chat_id}/messages")
    def append_message(chat_id: str, msg: ChatMessage) -> Dict[str, Any]:
        length = documents.append_message(chat_id, msg.model_dump(exclude_none=True))
        return {"chat_id": chat_id, "transcript_length": length}

    @app.get("/chats/{chat_id}/vault")
    def get_vault(chat_id: str) -> Dict[str, Any]:
        _require_chat(chat_id)
        return documents.handle(chat_id).get_store().to_dict()

    @app.put("/chats/{chat_id}/vault")
    def put_vault(chat_id: str, body: Dict[str, Any]) -> Dict[str, Any]:
        _require_chat(chat_id)
        saved = documents.handle(chat_id).persist(Store.from_dict(body))
        return {"saved": saved}

    @app.post("/chats/{chat_id}/memories")
    def add_memory(chat_id: str, req: NewMemory) -> Dict[str, Any]:
        _require_chat(chat_id)
        try:
            memory = service.add_memory(chat_id, req.summary, req.message_ids)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except OSError as e:
            raise HTTPException(status_code=500, detail=str(e))
        return memory.to_dict()

    @app.post("/chats/{chat_id}/reconcile", response_model=ReconcileResponse)
    def reconcile_chat(chat_id: str, req: Optional[ReconcileRequest] = None):
        _require_chat(chat_id)
        length = req.transcript_length if req is not None else None
        return _outcome_response(service.reconcile_chat(chat_id, length))

    @app.post("/chats/{chat_id}/branch", response_model=ReconcileResponse)
    def branch_chat(chat_id: str, req: BranchRequest):
        _require_chat(chat_id)
        return _outcome_response(service.branch_chat(chat_id, req.length))

    return app
