"""
Messaging API routes.

Thin handlers over the managed session client. Every handler answers with the
ApiResponse envelope; requests made while the session is not READY fail with
503 without reaching the client.
"""

import json

from starlette.requests import Request
from starlette.responses import JSONResponse

from wabridge.errors import SessionNotReady
from wabridge.logger import get_logger
from wabridge.models import ApiResponse
from wabridge.routes.health_routes import _get_supervisor
from wabridge.utils import format_phone_number, mask_number, to_serializable, trunc
from wabridge.validation import (
    validate_fields,
    validate_group_id,
    validate_message,
    validate_number,
)

logger = get_logger(__name__)


def _reply(status: bool, message, response=None, status_code: int = 200) -> JSONResponse:
    body = ApiResponse(status=status, message=message, response=to_serializable(response))
    return JSONResponse(body.model_dump(), status_code=status_code)


def _ready_client(request: Request):
    supervisor = _get_supervisor(request)
    if supervisor is None or not supervisor.state.is_ready:
        state = supervisor.state.state.value if supervisor else "unavailable"
        raise SessionNotReady(f"Session is not ready (state: {state})")
    return supervisor.client


async def _read_body(request: Request) -> dict:
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        try:
            data = await request.json()
        except json.JSONDecodeError:
            return {}
        return data if isinstance(data, dict) else {}
    form = await request.form()
    return dict(form)


async def send_message(request: Request) -> JSONResponse:
    """
    Send a text message.

    Body (JSON or form):
        - number: destination, digits only with country code
        - message: text to send
    """
    data = await _read_body(request)
    cleaned, errors = validate_fields(
        data, {"number": validate_number, "message": validate_message}
    )
    if errors:
        return _reply(False, errors, status_code=422)

    chat_id = format_phone_number(cleaned["number"])
    try:
        client = _ready_client(request)
        result = await client.send_message(chat_id, cleaned["message"])
    except SessionNotReady as e:
        return _reply(False, "Message not sent.", str(e), status_code=503)
    except Exception as e:
        logger.error(f"Failed to send message to {mask_number(cleaned['number'])}: {e}")
        return _reply(False, "Message not sent.", str(e), status_code=500)

    logger.info(
        f"Message sent to {mask_number(cleaned['number'])}: {trunc(cleaned['message'])}"
    )
    return _reply(True, "Message sent successfully.", result)


async def get_chats(request: Request) -> JSONResponse:
    """List chats visible to the session."""
    try:
        client = _ready_client(request)
        chats = await client.get_chats()
    except SessionNotReady as e:
        return _reply(False, "Cant return chats.", str(e), status_code=503)
    except Exception as e:
        logger.error(f"Failed to list chats: {e}")
        return _reply(False, "Cant return chats.", str(e), status_code=500)

    return _reply(True, "Returning chats", chats)


async def get_group_participants(request: Request) -> JSONResponse:
    """
    List the participants of a group.

    Query params:
        - groupId: group identifier
    """
    cleaned, errors = validate_fields(
        dict(request.query_params), {"groupId": validate_group_id}
    )
    if errors:
        return _reply(False, errors, status_code=422)

    try:
        client = _ready_client(request)
        participants = await client.get_group_participants(cleaned["groupId"])
    except SessionNotReady as e:
        return _reply(False, "Cant return chats.", str(e), status_code=503)
    except Exception as e:
        logger.error(f"Failed to get participants of {cleaned['groupId']}: {e}")
        return _reply(False, "Cant return chats.", str(e), status_code=500)

    return _reply(True, "Returning chats", participants)
