import logging
from typing import List, Literal, Optional

from fastapi import Depends, FastAPI, File, HTTPException, Request, UploadFile
from fastapi.responses import JSONResponse
from google.auth import exceptions as google_exceptions
from google.auth.transport import requests as google_requests
from google.oauth2 import id_token
from openai import AsyncOpenAI
from pydantic import BaseModel, ConfigDict, Field

import config
from chat import ChatOrchestrator, CompletionBackend, OpenAICompletionBackend
from context import ContextAssembler, Scope
from document_store import DocumentStore, container_client_from_settings
from errors import (
    DocChatError,
    ExtractionFailure,
    InvalidRequest,
    PayloadTooLarge,
    ServiceNotConfigured,
    UnsupportedMediaType,
    UpstreamFailure,
)
from extraction import SUPPORTED_MEDIA_TYPES, extract_text, resolve_media_type

logger = logging.getLogger("docchat")


# -----------------------------
# FastAPI app
# -----------------------------
app = FastAPI(title="Document Chat (OpenAI + Azure Blob Storage)")
app.state.store = None
app.state.completions = None


class ChatMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str


class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    messages: List[ChatMessage]
    # Absent means every stored document; [] means no documents at all.
    document_ids: Optional[List[str]] = Field(default=None, alias="documentIds")
    model: Optional[str] = None


class AuthRequest(BaseModel):
    password: str


class GoogleAuthRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    token: str
    # Optional profile sent by the browser; its email must match the token.
    user_data: Optional[dict] = Field(default=None, alias="userData")


@app.exception_handler(DocChatError)
async def docchat_error_handler(request: Request, exc: DocChatError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.on_event("startup")
def startup_event():
    logging.getLogger("docchat").setLevel(config.LOG_LEVEL)
    config.reload_system_instructions()
    config.log_env_config()

    if config.storage_configured():
        container = container_client_from_settings(
            config.AZURE_STORAGE_CONTAINER,
            connection_string=config.AZURE_STORAGE_CONNECTION_STRING,
            account=config.AZURE_STORAGE_ACCOUNT,
        )
        app.state.store = DocumentStore(container, prefix=config.AZURE_STORAGE_PREFIX)
    else:
        logger.warning("Azure storage is not configured; document routes will return 503.")

    if config.OPENAI_API_KEY:
        app.state.completions = OpenAICompletionBackend(
            AsyncOpenAI(api_key=config.OPENAI_API_KEY),
            timeout=config.COMPLETION_TIMEOUT_SECONDS,
        )
    else:
        logger.warning("OPENAI_API_KEY is not set; chat will return 503.")


def verify_google_token(token: str) -> str:
    """Verify a Google ID token and return the lower-cased, verified email."""
    try:
        claims = id_token.verify_oauth2_token(token, google_requests.Request(), config.GOOGLE_CLIENT_ID)
    except ValueError as exc:
        logger.warning("Rejected Google ID token: %s", exc)
        raise HTTPException(
            status_code=401, detail="Invalid identity token", headers={"WWW-Authenticate": "Bearer"}
        ) from exc
    except google_exceptions.TransportError as exc:
        logger.error("Could not fetch Google signing certificates: %s", exc)
        raise UpstreamFailure("Sign-in could not be verified right now.") from exc

    email = (claims.get("email") or "").strip().lower()
    if not email or not claims.get("email_verified"):
        raise HTTPException(status_code=401, detail="Identity token has no verified email")
    return email


def enforce_auth(request: Request) -> str:
    """Check the shared app password and return the caller's identity key.

    The identity is the email of a verified Google ID token sent as
    ``Authorization: Bearer <token>``. Without GOOGLE_CLIENT_ID there is no
    way to verify anyone, so every caller is "anonymous".
    """
    if config.AUTH_REQUIRED:
        password = request.headers.get("x-app-password", "")
        if not password or password != config.APP_PASSWORD:
            raise HTTPException(status_code=401, detail="Unauthorized")

    if not config.GOOGLE_CLIENT_ID:
        return "anonymous"

    scheme, _, token = request.headers.get("authorization", "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(status_code=401, detail="Missing identity token", headers={"WWW-Authenticate": "Bearer"})
    return verify_google_token(token.strip())


def get_store(request: Request) -> DocumentStore:
    store = request.app.state.store
    if store is None:
        raise ServiceNotConfigured(
            "Missing Azure storage config. Set AZURE_STORAGE_CONNECTION_STRING OR "
            "(AZURE_STORAGE_ACCOUNT + AZURE_STORAGE_CONTAINER)."
        )
    return store


def get_completions(request: Request) -> CompletionBackend:
    completions = request.app.state.completions
    if completions is None:
        raise ServiceNotConfigured("Missing OPENAI_API_KEY.")
    return completions


def get_orchestrator(
    store: DocumentStore = Depends(get_store),
    completions: CompletionBackend = Depends(get_completions),
) -> ChatOrchestrator:
    assembler = ContextAssembler(
        store,
        fetch_timeout=config.FETCH_TIMEOUT_SECONDS,
        max_concurrency=config.FETCH_CONCURRENCY,
        max_context_tokens=config.MAX_CONTEXT_TOKENS,
    )
    return ChatOrchestrator(assembler, completions, default_model=config.OPENAI_MODEL)


@app.post("/api/auth")
def auth(req: AuthRequest):
    if not config.AUTH_REQUIRED:
        return {"ok": True, "required": False}
    if req.password != config.APP_PASSWORD:
        raise HTTPException(status_code=401, detail="Invalid password")
    return {"ok": True, "required": True}


@app.post("/api/auth/google")
def auth_google(req: GoogleAuthRequest):
    if not config.GOOGLE_CLIENT_ID:
        raise ServiceNotConfigured("Missing GOOGLE_CLIENT_ID.")
    email = verify_google_token(req.token)
    claimed = str((req.user_data or {}).get("email") or email).strip().lower()
    if claimed != email:
        logger.warning("Sign-in email mismatch: token %s, profile %s", email, claimed)
        raise HTTPException(status_code=401, detail="Email verification failed")
    logger.info("Signed in: %s", email)
    return {"success": True, "user": {**(req.user_data or {}), "email": email}}


@app.get("/api/status")
def status(request: Request, identity: str = Depends(enforce_auth)):
    return {
        "ok": True,
        "storage_ready": request.app.state.store is not None,
        "chat_ready": request.app.state.completions is not None,
        "model": config.OPENAI_MODEL,
        "upload_require_text": config.UPLOAD_REQUIRE_TEXT,
        "auth_required": config.AUTH_REQUIRED,
        "identity_required": bool(config.GOOGLE_CLIENT_ID),
    }


@app.get("/api/models")
def list_models(identity: str = Depends(enforce_auth)):
    return {"models": list(config.OPENAI_MODELS), "default": config.OPENAI_MODEL}


@app.get("/api/documents")
def list_documents(identity: str = Depends(enforce_auth), store: DocumentStore = Depends(get_store)):
    records = sorted(store.list(), key=lambda r: r.id)
    return {"documents": [r.to_json() for r in records]}


@app.delete("/api/documents/{key}")
def delete_document(key: str, identity: str = Depends(enforce_auth), store: DocumentStore = Depends(get_store)):
    store.delete(key)
    logger.info("Document %s deleted by %s", key, identity)
    return {"success": True, "message": "Document deleted successfully"}


@app.post("/api/upload")
def upload(
    document: Optional[UploadFile] = File(None),
    identity: str = Depends(enforce_auth),
    store: DocumentStore = Depends(get_store),
):
    if document is None or not document.filename:
        raise InvalidRequest("No file uploaded")

    # One byte past the limit is enough to tell the file is too large.
    data = document.file.read(config.MAX_UPLOAD_BYTES + 1)
    if not data:
        raise InvalidRequest("The uploaded file is empty")
    if len(data) > config.MAX_UPLOAD_BYTES:
        raise PayloadTooLarge(f"The file is larger than the {config.MAX_UPLOAD_BYTES} byte limit")

    media_type = resolve_media_type(document.content_type, document.filename)
    logger.info("Upload from %s: %s (%s, %d bytes)", identity, document.filename, media_type, len(data))

    if config.UPLOAD_REQUIRE_TEXT and media_type not in SUPPORTED_MEDIA_TYPES:
        raise UnsupportedMediaType(
            "Only PDF and plain text files can be used in conversations.",
            details=f"Unsupported media type: {media_type}",
        )

    try:
        text = extract_text(data, media_type)
    except ExtractionFailure as exc:
        logger.warning("Extraction failed for %s: %s", document.filename, exc.details or exc.reason)
        raise

    if not text.strip():
        if config.UPLOAD_REQUIRE_TEXT:
            raise ExtractionFailure(
                "No text could be extracted from this file. Scanned (image-only) PDFs are not supported.",
                details=f"{document.filename} produced no text",
            )
        logger.warning("Storing %s without extracted text", document.filename)
        text = ""

    record = store.put(data, media_type, document.filename, text)
    return {"success": True, "document": record.to_json()}


@app.post("/api/chat")
async def chat(
    req: ChatRequest,
    identity: str = Depends(enforce_auth),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
):
    if not req.messages:
        raise InvalidRequest("messages is required")

    scope = Scope.all() if req.document_ids is None else Scope.explicit(req.document_ids)
    messages = [m.model_dump() for m in req.messages]
    return await orchestrator.handle_turn(messages, scope, req.model)


# Entry point for: python app.py
if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run(app, host="127.0.0.1", port=8000)
