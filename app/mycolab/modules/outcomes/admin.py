from __future__ import annotations

from flask import Blueprint, g, jsonify, request

from app.mycolab.db import db_session
from app.mycolab.models import User
from app.mycolab.modules.outcomes.service import dispose, list_outcomes, outcome_to_dict
from app.mycolab.modules.outcomes.vocabulary import CONTAMINATION_TYPES, SUSPECTED_CAUSES, options_for
from app.mycolab.modules.records import history
from app.mycolab.modules.records.errors import InvalidFieldValue, InvalidOutcomeCode
from app.mycolab.rbac import require_permission

bp = Blueprint("outcomes", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


@bp.get("")
@require_permission("records.view")
def outcomes_list():
    s = db_session()
    entity_type = (request.args.get("entity_type") or "").strip().lower() or None
    category = (request.args.get("category") or "").strip().lower() or None
    rows = list_outcomes(s, entity_type=entity_type, outcome_category=category)
    return jsonify({"outcomes": [outcome_to_dict(r) for r in rows]})


@bp.get("/vocabulary/<entity_type>")
@require_permission("records.view")
def outcomes_vocabulary(entity_type: str):
    options = options_for(entity_type)
    if options is None:
        raise InvalidOutcomeCode(f"Entity type {entity_type!r} has no outcome vocabulary.")
    return jsonify(
        {
            "entity_type": entity_type.lower(),
            "outcomes": [o.to_dict() for o in options.values()],
            "contamination_types": [{"code": k, "label": v} for k, v in CONTAMINATION_TYPES.items()],
            "suspected_causes": [{"code": k, "label": v} for k, v in SUSPECTED_CAUSES.items()],
        }
    )


@bp.post("/<entity_type>/<record_group_id>/dispose")
@require_permission("records.dispose")
def outcomes_dispose(entity_type: str, record_group_id: str):
    s = db_session()
    u = _current_user()
    payload = request.get_json(silent=True) or {}
    if not isinstance(payload, dict):
        raise InvalidFieldValue("body", "must be a JSON object.")

    expected = payload.get("expected_version")
    try:
        expected_version = int(expected) if expected not in (None, "") else None
    except (TypeError, ValueError):
        raise InvalidFieldValue("expected_version", "must be a whole number.") from None

    dispose(s, entity_type, record_group_id, payload, u, expected_version=expected_version)
    s.commit()
    current = history.get_current(s, record_group_id)
    return jsonify({"record": current.to_dict()}), 201
