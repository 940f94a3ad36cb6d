"""
Post pipeline: the only write path into the message log.

submit() runs the checks in a fixed order, token first, then rate limit,
then field validation, and only then opens the store transaction that
resolves the author's identity and appends the message.
"""

import logging
from typing import Optional

from pydantic import ValidationError
from sqlalchemy.orm import Session

from chatroom import storage
from chatroom.errors import InvalidInput, ServerError
from chatroom.schemas import ChatPost, SendRequest
from chatroom.sessions import SessionGuard, SessionRecord

logger = logging.getLogger(__name__)


def _describe(error: dict) -> str:
    error_type = error.get("type")
    ctx = error.get("ctx") or {}
    if error_type == "string_too_short":
        return "is required"
    if error_type == "string_too_long":
        return f"must be at most {ctx.get('max_length')} characters"
    if error_type == "value_error":
        return str(ctx.get("error", error.get("msg")))
    return error.get("msg", "is invalid")


def validate_post(request: SendRequest) -> ChatPost:
    """
    Trim and validate the user-supplied fields of a send request.

    Raises:
        InvalidInput: naming the first offending field and its constraint
    """
    try:
        return ChatPost(name=request.name, email=request.email, content=request.content)
    except ValidationError as e:
        error = e.errors()[0]
        field = str(error["loc"][0]) if error.get("loc") else "body"
        raise InvalidInput(field, _describe(error))


def submit(
    db: Session,
    record: SessionRecord,
    guard: SessionGuard,
    request: SendRequest,
    client_address: Optional[str] = None,
) -> int:
    """
    Accept a chat post and return the new message id.

    Args:
        db: Database session; committed on success, rolled back on failure
        record: The posting session's state
        guard: Token and rate-limit checks
        request: Parsed send request
        client_address: Origin address, stored for diagnostics

    Raises:
        Forbidden: bad or missing anti-forgery token
        RateLimited: the session posted too recently
        InvalidInput: a field failed validation
        ServerError: the store transaction failed; nothing was persisted
    """
    guard.validate_token(record, request.csrf)
    guard.acquire_post_slot(record)
    post = validate_post(request)

    try:
        identity_id = storage.resolve_identity(db, post.name, post.email)
        message_id = storage.append_message(db, identity_id, post.content, client_address)
        db.commit()
    except Exception as e:
        db.rollback()
        logger.error(f"Failed to store message from {post.email}: {e}")
        raise ServerError() from e

    logger.info(f"Stored message {message_id} from identity {identity_id}")
    return message_id
