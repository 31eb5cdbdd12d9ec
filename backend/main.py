from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, Response
from fastapi.staticfiles import StaticFiles

from . import auth, config, database, situations
from .errors import InvalidInputError, NotFoundError, StoreOperationError
from .export import export_diaries_csv, export_diaries_excel, export_diary_word
from .metadata import generate_diary_metadata
from .models import (
    AdminLoginPayload,
    BulletContentPayload,
    Card,
    ChangePasswordPayload,
    CreateCardPayload,
    CreateDiaryPayload,
    DiaryAccessPayload,
    DiaryLockPayload,
    ReorderPayload,
    SituationsPayload,
    TreeItemPayload,
    UpdateCardPayload,
)
from .ordering import append_order, insertion_order
from .realtime import ConnectionManager
from .sanitize import sanitize_html, text_length
from .session import DiarySession
from .store import get_document_store

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)
logger.info("Build tag: %s", config.BUILD_TAG)
logger.info(
    "Store config: backend=%s project_id=%s",
    config.STORE_BACKEND,
    config.FIREBASE_PROJECT_ID,
)

app = FastAPI()
manager = ConnectionManager()

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"status": "error", "message": message})


@app.exception_handler(InvalidInputError)
async def handle_invalid_input(request: Request, exc: InvalidInputError) -> JSONResponse:
    return error_response(400, str(exc))


@app.exception_handler(NotFoundError)
async def handle_not_found(request: Request, exc: NotFoundError) -> JSONResponse:
    return error_response(404, str(exc))


@app.exception_handler(StoreOperationError)
async def handle_store_failure(request: Request, exc: StoreOperationError) -> JSONResponse:
    return error_response(503, str(exc))


def get_client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if request.client:
        return request.client.host
    return "unknown"


def get_bearer_token(request: Request) -> Optional[str]:
    auth_header = request.headers.get("authorization") or ""
    parts = auth_header.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1].strip() or None


def require_admin(request: Request) -> None:
    if not auth.validate_admin_token(get_bearer_token(request)):
        raise HTTPException(status_code=401, detail="Admin authorization required")


def require_diary_access(request: Request, diary_id: str) -> None:
    if not auth.validate_diary_token(get_bearer_token(request), diary_id):
        raise HTTPException(status_code=401, detail="Diary access required")


def require_card(request: Request, card_id: str) -> Card:
    card = database.get_card(card_id)
    if card is None:
        raise NotFoundError("Card not found")
    require_diary_access(request, card.diary_id)
    return card


def clean_body_text(body_text: Optional[str]) -> Optional[str]:
    if body_text is None:
        return None
    if text_length(body_text) > config.CARD_BODY_CHARACTER_LIMIT:
        raise InvalidInputError(f"Please keep text under {config.CARD_BODY_CHARACTER_LIMIT} characters")
    return sanitize_html(body_text)


def attachment(content: bytes | str, media_type: str, filename: str) -> Response:
    headers = {"Content-Disposition": f"attachment; filename={filename}"}
    return Response(content=content, media_type=media_type, headers=headers)


@app.on_event("startup")
async def init_store() -> None:
    store = get_document_store()
    logger.info("Document store ready: %s", type(store).__name__)


# Admin


@app.post("/admin/login")
async def admin_login(payload: AdminLoginPayload, request: Request) -> Dict[str, object]:
    client_key = get_client_ip(request)
    refusal = auth.check_lockout(client_key)
    if refusal:
        return refusal
    password_hash = auth.get_admin_password_hash()
    if not password_hash:
        return {"ok": False, "message": "Admin password not configured"}
    if auth.verify_password(payload.password, password_hash):
        auth.clear_failed_attempts(client_key)
        return {
            "ok": True,
            "token": auth.issue_admin_token(),
            "expires_in_seconds": config.ADMIN_TOKEN_TTL_SECONDS,
        }
    return auth.record_failed_attempt(client_key, "Invalid password")


@app.post("/admin/password")
async def change_admin_password(payload: ChangePasswordPayload, request: Request) -> Dict[str, str]:
    require_admin(request)
    auth.change_admin_password(payload.new_password, payload.confirm_password)
    logger.info("Admin password changed")
    return {"status": "ok"}


# Diaries


@app.get("/diaries")
async def list_diaries(request: Request, search: Optional[str] = None) -> Dict[str, List[Dict]]:
    require_admin(request)
    return {"diaries": [diary.to_json() for diary in database.list_diaries(search)]}


@app.post("/diaries")
async def create_diary(payload: CreateDiaryPayload, request: Request) -> Dict[str, object]:
    require_admin(request)
    diary_id = database.create_diary(payload.client_id, payload.name, payload.gender)
    diary = database.get_diary(diary_id)
    return {"status": "ok", "diary": diary.to_json() if diary else {"id": diary_id}}


@app.get("/diaries/{diary_id}")
async def get_diary(diary_id: str, request: Request) -> Dict[str, object]:
    require_diary_access(request, diary_id)
    diary = database.get_diary(diary_id)
    if diary is None:
        raise NotFoundError("Diary not found")
    return {"diary": diary.to_json()}


@app.get("/diaries/{diary_id}/metadata")
async def get_diary_metadata(diary_id: str) -> Dict[str, Any]:
    return generate_diary_metadata(database.get_diary(diary_id))


@app.post("/diaries/{diary_id}/access")
async def access_diary(diary_id: str, payload: DiaryAccessPayload, request: Request) -> Dict[str, object]:
    client_key = f"{get_client_ip(request)}:{diary_id}"
    refusal = auth.check_lockout(client_key)
    if refusal:
        return refusal
    if not database.validate_diary_access(diary_id, payload.client_id):
        return auth.record_failed_attempt(client_key, "Invalid client ID")
    diary = database.get_diary(diary_id)
    if diary.is_locked and not database.verify_diary_password(diary_id, payload.password or ""):
        return auth.record_failed_attempt(client_key, "Incorrect password")
    auth.clear_failed_attempts(client_key)
    return {
        "ok": True,
        "token": auth.issue_diary_token(diary_id),
        "expires_in_seconds": config.DIARY_TOKEN_TTL_SECONDS,
        "diary": diary.to_json(),
    }


@app.post("/diaries/{diary_id}/read")
async def mark_card_read(diary_id: str, request: Request) -> Dict[str, int]:
    require_diary_access(request, diary_id)
    count = database.increment_card_reading_count(diary_id)
    if count is None:
        raise NotFoundError("Diary not found")
    return {"cardReadingCount": count}


@app.delete("/diaries/{diary_id}")
async def delete_diary(diary_id: str, request: Request) -> Dict[str, str]:
    require_admin(request)
    database.delete_diary(diary_id)
    auth.revoke_diary_tokens(diary_id)
    await manager.close_diary(diary_id, "deleted")
    return {"status": "ok"}


@app.post("/diaries/{diary_id}/lock")
async def lock_diary(diary_id: str, payload: DiaryLockPayload, request: Request) -> Dict[str, str]:
    require_diary_access(request, diary_id)
    if payload.confirm_password is not None and payload.confirm_password != payload.password:
        raise InvalidInputError("Passwords do not match")
    database.set_diary_lock(diary_id, payload.password)
    return {"status": "ok"}


@app.post("/diaries/{diary_id}/unlock")
async def unlock_diary(diary_id: str, payload: DiaryLockPayload, request: Request) -> Dict[str, str]:
    require_diary_access(request, diary_id)
    database.clear_diary_lock(diary_id, payload.password)
    return {"status": "ok"}


# Cards


@app.get("/diaries/{diary_id}/cards")
async def list_cards(diary_id: str, request: Request) -> Dict[str, List[Dict]]:
    require_diary_access(request, diary_id)
    if database.get_diary(diary_id) is None:
        raise NotFoundError("Diary not found")
    return {"cards": [card.to_json() for card in database.get_cards(diary_id)]}


@app.post("/diaries/{diary_id}/cards")
async def create_card(diary_id: str, payload: CreateCardPayload, request: Request) -> Dict[str, object]:
    require_diary_access(request, diary_id)
    if database.get_diary(diary_id) is None:
        raise NotFoundError("Diary not found")
    body_text = clean_body_text(payload.body_text)
    order = payload.order
    if order is None:
        cards = database.get_cards(diary_id)
        if payload.after_index is None:
            order = append_order(cards)
        else:
            order = insertion_order(cards, payload.after_index)
            if order is None:
                cards = database.compact_card_order(diary_id)
                order = insertion_order(cards, payload.after_index)
    card_id = database.create_card(diary_id, payload.topic, body_text, order, payload.type)
    card = database.get_card(card_id)
    return {"status": "ok", "card": card.to_json() if card else {"id": card_id}}


@app.post("/diaries/{diary_id}/cards/reorder")
async def reorder_cards(diary_id: str, payload: ReorderPayload, request: Request) -> Dict[str, List[Dict]]:
    require_diary_access(request, diary_id)
    cards = database.reorder_cards(diary_id, payload.card_id, payload.target_index)
    return {"cards": [card.to_json() for card in cards]}


@app.patch("/cards/{card_id}")
async def update_card(card_id: str, payload: UpdateCardPayload, request: Request) -> Dict[str, object]:
    require_card(request, card_id)
    database.update_card(
        card_id,
        topic=payload.topic,
        body_text=clean_body_text(payload.body_text),
        card_type=payload.type,
        order=payload.order,
    )
    card = database.get_card(card_id)
    return {"status": "ok", "card": card.to_json() if card else None}


@app.delete("/cards/{card_id}")
async def delete_card(card_id: str, request: Request) -> Dict[str, str]:
    require_card(request, card_id)
    database.delete_card(card_id)
    return {"status": "ok"}


@app.post("/cards/{card_id}/duplicate")
async def duplicate_card(card_id: str, request: Request) -> Dict[str, object]:
    require_card(request, card_id)
    new_card_id = database.duplicate_card(card_id)
    card = database.get_card(new_card_id)
    return {"status": "ok", "card": card.to_json() if card else {"id": new_card_id}}


# Situations library


@app.get("/situations")
async def list_situations() -> Dict[str, List[Dict]]:
    return {"situations": situations.get_situation_tree()}


@app.post("/situations")
async def create_situations(payload: SituationsPayload, request: Request) -> Dict[str, List[Dict]]:
    require_admin(request)
    titles = list(payload.titles)
    if payload.content:
        titles.extend(line.strip() for line in payload.content.splitlines())
    titles = [title for title in titles if title]
    if not titles:
        raise InvalidInputError("Enter at least one situation")
    created = situations.create_multiple_situations(titles)
    return {"situations": [situation.to_json() for situation in created]}


@app.post("/situations/cleanup")
async def cleanup_situations(request: Request) -> Dict[str, int]:
    require_admin(request)
    return {"removed": situations.cleanup_corrupted_situations()}


@app.patch("/situations/{situation_id}")
async def update_situation(situation_id: str, payload: TreeItemPayload, request: Request) -> Dict[str, str]:
    require_admin(request)
    if not situations.update_situation(situation_id, payload.title, payload.description):
        raise NotFoundError("Situation not found")
    return {"status": "ok"}


@app.delete("/situations/{situation_id}")
async def delete_situation(situation_id: str, request: Request) -> Dict[str, str]:
    require_admin(request)
    if not situations.delete_situation(situation_id):
        raise NotFoundError("Situation not found")
    return {"status": "ok"}


@app.get("/situations/{situation_id}/content")
async def get_situation_content(situation_id: str) -> Dict[str, str]:
    return {"content": situations.get_before_after_content_for_situation(situation_id)}


@app.put("/situations/{situation_id}/content")
async def save_situation_content(
    situation_id: str, payload: BulletContentPayload, request: Request
) -> Dict[str, object]:
    require_admin(request)
    count = situations.save_before_after_items_from_content(situation_id, payload.content)
    return {"status": "ok", "beforeItems": count}


@app.post("/situations/{situation_id}/before-items")
async def create_before_item(situation_id: str, payload: TreeItemPayload, request: Request) -> Dict[str, str]:
    require_admin(request)
    before_item_id = situations.create_before_item(situation_id, payload.title or "", payload.description)
    return {"status": "ok", "id": before_item_id}


@app.patch("/before-items/{before_item_id}")
async def update_before_item(before_item_id: str, payload: TreeItemPayload, request: Request) -> Dict[str, str]:
    require_admin(request)
    if not situations.update_before_item(before_item_id, payload.title, payload.description):
        raise NotFoundError("Before item not found")
    return {"status": "ok"}


@app.delete("/before-items/{before_item_id}")
async def delete_before_item(before_item_id: str, request: Request) -> Dict[str, str]:
    require_admin(request)
    if not situations.delete_before_item(before_item_id):
        raise NotFoundError("Before item not found")
    return {"status": "ok"}


@app.post("/before-items/{before_item_id}/after-items")
async def create_after_item(before_item_id: str, payload: TreeItemPayload, request: Request) -> Dict[str, str]:
    require_admin(request)
    after_item_id = situations.create_after_item(before_item_id, payload.title or "", payload.description)
    return {"status": "ok", "id": after_item_id}


@app.patch("/after-items/{after_item_id}")
async def update_after_item(after_item_id: str, payload: TreeItemPayload, request: Request) -> Dict[str, str]:
    require_admin(request)
    if not situations.update_after_item(after_item_id, payload.title, payload.description):
        raise NotFoundError("After item not found")
    return {"status": "ok"}


@app.delete("/after-items/{after_item_id}")
async def delete_after_item(after_item_id: str, request: Request) -> Dict[str, str]:
    require_admin(request)
    if not situations.delete_after_item(after_item_id):
        raise NotFoundError("After item not found")
    return {"status": "ok"}


# Exports


@app.get("/export/diaries.csv")
async def export_csv(request: Request) -> Response:
    require_admin(request)
    content = export_diaries_csv(database.list_diaries(), config.PUBLIC_BASE_URL)
    return attachment(content, "text/csv", "diaries.csv")


@app.get("/export/diaries.xlsx")
async def export_excel(request: Request) -> Response:
    require_admin(request)
    content = export_diaries_excel(database.list_diaries(), config.PUBLIC_BASE_URL)
    return attachment(
        content,
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        "diaries.xlsx",
    )


@app.get("/export/diaries/{diary_id}/word")
async def export_word(diary_id: str, request: Request) -> Response:
    require_diary_access(request, diary_id)
    diary = database.get_diary(diary_id)
    if diary is None:
        raise NotFoundError("Diary not found")
    content = export_diary_word(diary, database.get_cards(diary_id))
    return attachment(
        content,
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        f"diary_{diary.client_id}.docx",
    )


# Live editing


def optional_text(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


def handle_session_message(session: DiarySession, data: Dict[str, Any]) -> None:
    message_type = data.get("type")
    card_id = str(data.get("cardId") or "")
    if message_type == "ping":
        session.emit({"type": "pong", "ts": data.get("ts")})
    elif message_type == "card:text":
        session.live_text_change(
            card_id,
            topic=optional_text(data.get("topic")),
            body_text=optional_text(data.get("bodyText")),
        )
    elif message_type == "card:save":
        session.save_card(
            card_id,
            topic=optional_text(data.get("topic")),
            body_text=optional_text(data.get("bodyText")),
            card_type=optional_text(data.get("cardType")),
        )
    elif message_type == "card:add":
        session.add_card()
    elif message_type == "card:duplicate":
        session.duplicate_card()
    elif message_type == "card:delete":
        session.delete_card()
    elif message_type == "card:reorder":
        session.reorder(card_id, int(data.get("targetIndex", 0)))
    elif message_type == "navigate":
        direction = data.get("direction")
        if direction == "next":
            session.next_card()
        elif direction == "prev":
            session.previous_card()
        elif data.get("index") is not None:
            session.go_to(int(data["index"]))
    elif message_type == "undo":
        session.undo()
    elif message_type == "redo":
        session.redo()
    elif message_type == "diary:read":
        session.mark_read()
    else:
        logger.info("Unknown WS message type: %s", message_type)


@app.websocket("/ws/diaries/{diary_id}")
async def diary_websocket(websocket: WebSocket, diary_id: str) -> None:
    token = websocket.query_params.get("token")
    if not auth.validate_diary_token(token, diary_id):
        logger.info("WebSocket refused, no access. diary_id=%s", diary_id)
        await websocket.close(code=4401)
        return
    diary = database.get_diary(diary_id)
    if diary is None:
        await websocket.close(code=4404)
        return

    try:
        session = await manager.connect(websocket, diary_id)
        logger.info(
            "WebSocket accepted. diary_id=%s remote=%s viewers=%s",
            diary_id,
            websocket.client,
            manager.connection_count(diary_id),
        )
        session.emit(
            {
                "type": "hello",
                "diary": diary.to_json(),
                "characterLimit": session.character_limit,
                "autosaveDebounceMs": config.AUTOSAVE_DEBOUNCE_MS,
            }
        )
        await session.start()
    except Exception:
        logger.exception("WebSocket connection failed")
        manager.disconnect(websocket)
        try:
            await websocket.close(code=1011)
        except Exception:
            logger.debug("Socket already closed. diary_id=%s", diary_id)
        return

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                data = json.loads(raw)
            except ValueError:
                continue
            if not isinstance(data, dict):
                continue
            logger.debug("WS message: diary_id=%s type=%s", diary_id, data.get("type"))
            try:
                handle_session_message(session, data)
            except (TypeError, ValueError):
                session.emit({"type": "toast", "level": "error", "message": "Invalid message"})
    except WebSocketDisconnect:
        logger.info("WebSocket disconnected. diary_id=%s", diary_id)
    finally:
        manager.disconnect(websocket)


# Mount assets explicitly to avoid intercepting root requests (and WebSockets)
if (config.FRONTEND_DIST / "assets").exists():
    app.mount("/assets", StaticFiles(directory=config.FRONTEND_DIST / "assets"), name="assets")


# Catch-all route for SPA - must be defined LAST
@app.get("/{full_path:path}")
async def serve_spa(full_path: str):
    # If the file exists in dist (e.g. favicon.ico, manifest.json), serve it
    dist_root = config.FRONTEND_DIST.resolve()
    possible_file = (dist_root / full_path).resolve()
    if possible_file.is_relative_to(dist_root) and possible_file.is_file():
        return FileResponse(possible_file)

    # Otherwise serve index.html for client-side routing
    index_path = config.FRONTEND_DIST / "index.html"
    if index_path.exists():
        return FileResponse(index_path)

    return Response("Frontend not found. Did you run 'npm run build'?", status_code=404)
