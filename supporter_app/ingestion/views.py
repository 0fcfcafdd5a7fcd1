"""
Ingestion blueprint: health and the operator merge endpoint.
"""

from __future__ import annotations

from http import HTTPStatus

from flask import Blueprint, current_app, jsonify, request

from supporter_app.ingestion.errors import InvalidMergeRequest, MergeConflict, SupporterNotFound
from supporter_app.ingestion.pipeline.merge_service import MergeService

from .registry import SourceDescriptor

ingestion_blueprint = Blueprint("ingestion", __name__, url_prefix="/ingestion")


def _serialize_source(source: SourceDescriptor, missing: list[str]) -> dict:
    return {
        "name": source.name,
        "title": source.title,
        "delivery": source.delivery,
        "configured": not missing,
        "missing_settings": missing,
    }


def _error(code: str, message: str, status: HTTPStatus):
    return jsonify({"error": {"code": code, "message": message}}), status


@ingestion_blueprint.get("/health")
def ingestion_healthcheck():
    state = current_app.extensions.get("ingestion", {})
    missing = state.get("missing_settings", {})
    return (
        jsonify(
            {
                "status": "ok",
                "enabled": state.get("enabled", False),
                "worker_enabled": state.get("worker_enabled", False),
                "sources": [
                    _serialize_source(source, list(missing.get(source.name, ())))
                    for source in state.get("active_sources", ())
                ],
            }
        ),
        200,
    )


@ingestion_blueprint.post("/supporters/<source_id>/merge")
def merge_supporter(source_id: str):
    """
    Merge ``source_id`` into ``target_id`` from the JSON body.

    Body: ``{"target_id": str, "reason": str, "actor": str?}``.
    """
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        return _error(InvalidMergeRequest.code, "Request body must be a JSON object", HTTPStatus.BAD_REQUEST)
    target_id = body.get("target_id")
    if not target_id:
        return _error(InvalidMergeRequest.code, "target_id is required", HTTPStatus.BAD_REQUEST)

    try:
        target = MergeService().merge(
            source_id,
            str(target_id),
            actor=str(body.get("actor") or "api"),
            reason=str(body.get("reason") or ""),
        )
    except InvalidMergeRequest as exc:
        return _error(exc.code, str(exc), HTTPStatus.BAD_REQUEST)
    except SupporterNotFound as exc:
        return _error(exc.code, str(exc), HTTPStatus.NOT_FOUND)
    except MergeConflict as exc:
        return _error(exc.code, str(exc), HTTPStatus.CONFLICT)

    return jsonify({"merged": source_id, "target": target.to_snapshot()}), HTTPStatus.OK
