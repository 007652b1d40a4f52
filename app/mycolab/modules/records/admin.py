from __future__ import annotations

from typing import Any

from flask import Blueprint, current_app, g, jsonify, request

from app.mycolab.db import db_session
from app.mycolab.models import User
from app.mycolab.modules.records import history
from app.mycolab.modules.records.errors import InvalidFieldValue
from app.mycolab.modules.records.service import amend, archive, create_record, merge, restore_version
from app.mycolab.rbac import require_permission
from app.mycolab.utils import parse_timestamp

bp = Blueprint("records", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _payload() -> dict[str, Any]:
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise InvalidFieldValue("body", "must be a JSON object.")
    return payload


def _expected_version(payload: dict[str, Any]) -> int | None:
    raw = payload.get("expected_version")
    if raw is None or raw == "":
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise InvalidFieldValue("expected_version", "must be a whole number.") from None


def _flag(name: str) -> bool:
    return (request.args.get(name) or "").strip().lower() in ("1", "true", "yes", "on")


def _version_response(s, record_group_id: str, status: int = 200):
    current = history.get_current(s, record_group_id)
    return jsonify({"record": current.to_dict()}), status


@bp.get("")
@require_permission("records.view")
def records_list():
    s = db_session()
    entity_type = (request.args.get("entity_type") or "").strip().lower() or None
    try:
        page = int(request.args.get("page") or "1")
    except ValueError:
        page = 1
    if page < 1:
        page = 1
    per_page = int(current_app.config.get("RECORDS_PAGE_SIZE") or 50)

    rows = history.list_current(
        s,
        entity_type=entity_type,
        include_archived=_flag("include_archived"),
        limit=per_page + 1,
        offset=(page - 1) * per_page,
    )
    has_more = len(rows) > per_page
    return jsonify(
        {
            "records": [r.to_dict() for r in rows[:per_page]],
            "page": page,
            "per_page": per_page,
            "has_more": has_more,
        }
    )


@bp.post("")
@require_permission("records.create")
def records_create():
    s = db_session()
    u = _current_user()
    payload = _payload()
    entity_type = (payload.get("entity_type") or "").strip()
    version = create_record(s, entity_type, payload.get("fields") or {}, u)
    s.commit()
    return _version_response(s, version.record_group_id, 201)


@bp.get("/<record_group_id>")
@require_permission("records.view")
def records_detail(record_group_id: str):
    s = db_session()
    return _version_response(s, record_group_id)


@bp.get("/<record_group_id>/versions")
@require_permission("records.view")
def records_versions(record_group_id: str):
    s = db_session()
    versions = history.get_versions(s, record_group_id)
    return jsonify({"record_group_id": record_group_id, "versions": [v.to_dict() for v in versions]})


@bp.get("/<record_group_id>/amendments")
@require_permission("records.view")
def records_amendments(record_group_id: str):
    s = db_session()
    log = history.get_amendment_log(s, record_group_id)
    return jsonify(
        {
            "record_group_id": record_group_id,
            "amendments": {
                version_id: [history.log_entry_to_dict(e) for e in entries]
                for version_id, entries in log.items()
            },
        }
    )


@bp.get("/<record_group_id>/as-of")
@require_permission("records.view")
def records_as_of(record_group_id: str):
    s = db_session()
    try:
        at = parse_timestamp(request.args.get("at"))
    except ValueError:
        raise InvalidFieldValue("at", "must be an ISO-8601 timestamp.") from None
    if at is None:
        raise InvalidFieldValue("at", "is required.")
    view = history.version_as_of(s, record_group_id, at)
    return jsonify({"record_group_id": record_group_id, "version": view.to_dict() if view else None})


@bp.get("/<record_group_id>/integrity")
@require_permission("records.view")
def records_integrity(record_group_id: str):
    s = db_session()
    problems = history.verify_chain(s, record_group_id)
    if problems:
        current_app.logger.warning("Record %s failed chain verification: %s", record_group_id, "; ".join(problems))
    return jsonify({"record_group_id": record_group_id, "ok": not problems, "problems": problems})


@bp.post("/<record_group_id>/amend")
@require_permission("records.amend")
def records_amend(record_group_id: str):
    s = db_session()
    u = _current_user()
    payload = _payload()
    amend(
        s,
        record_group_id,
        payload.get("changes") or {},
        payload.get("amendment_type") or "",
        payload.get("reason"),
        u,
        expected_version=_expected_version(payload),
    )
    s.commit()
    return _version_response(s, record_group_id, 201)


@bp.post("/<record_group_id>/restore")
@require_permission("records.amend")
def records_restore(record_group_id: str):
    s = db_session()
    u = _current_user()
    payload = _payload()
    version_id = (payload.get("version_id") or "").strip()
    if not version_id:
        raise InvalidFieldValue("version_id", "is required.")
    restore_version(
        s,
        record_group_id,
        version_id,
        payload.get("reason"),
        u,
        expected_version=_expected_version(payload),
    )
    s.commit()
    return _version_response(s, record_group_id, 201)


@bp.post("/<record_group_id>/merge")
@require_permission("records.amend")
def records_merge(record_group_id: str):
    s = db_session()
    u = _current_user()
    payload = _payload()
    sources = payload.get("source_group_ids") or []
    if not isinstance(sources, list):
        raise InvalidFieldValue("source_group_ids", "must be a list of record ids.")
    merge(
        s,
        record_group_id,
        [str(x) for x in sources],
        payload.get("changes") or {},
        payload.get("reason"),
        u,
        expected_version=_expected_version(payload),
    )
    s.commit()
    return _version_response(s, record_group_id, 201)


@bp.post("/<record_group_id>/archive")
@require_permission("records.dispose")
def records_archive(record_group_id: str):
    s = db_session()
    u = _current_user()
    payload = _payload()
    archive(s, record_group_id, payload.get("reason"), u, expected_version=_expected_version(payload))
    s.commit()
    return _version_response(s, record_group_id, 201)
