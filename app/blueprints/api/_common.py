"""
Request plumbing shared by the API blueprints: the caller's actor id, the
wired ``AccessService`` and body/query parsing.
"""
from __future__ import annotations

from flask import current_app, request

from app.domain.exceptions import ConfigurationError, ValidationError
from app.utils.http import success_response

ACTOR_HEADER = "X-Actor-Id"


def get_actor_id() -> str:
    """
    Actor id forwarded by the authenticating gateway.

    Raises:
        ValidationError: header missing or blank
    """
    actor_id = request.headers.get(ACTOR_HEADER, "").strip()
    if not actor_id:
        raise ValidationError(f"Missing {ACTOR_HEADER} header")
    return actor_id


def get_container():
    container = current_app.config.get("CONTAINER")
    if container is None:
        raise ConfigurationError("ServiceContainer not found in app config")
    return container


def get_access_service():
    return get_container().access_service


def get_json() -> dict:
    """Request body as a dict; anything that is not a JSON object becomes ``{}``."""
    body = request.get_json(silent=True)
    return body if isinstance(body, dict) else {}


def query_args() -> dict:
    """Query string as a plain dict, blank values dropped."""
    return {k: v for k, v in request.args.items() if v not in (None, "")}


success = success_response
