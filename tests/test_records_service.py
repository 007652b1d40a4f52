"""Tests for record versioning: amendment engine and history queries."""
from datetime import datetime, timedelta

import pytest
from werkzeug.security import generate_password_hash

from app.mycolab import create_app
from app.mycolab.db import session_scope
from app.mycolab.models import AuditEvent, Base, RecordVersion, User
from app.mycolab.modules.records import history, store
from app.mycolab.modules.records.errors import (
    ConcurrentModification,
    ImmutableRecordError,
    InvalidAmendmentType,
    InvalidFieldValue,
    MissingReason,
    NoOpAmendment,
    RecordArchived,
    RecordGroupNotFound,
    VersionNotFound,
)
from app.mycolab.modules.records.service import amend, archive, create_record, merge, restore_version

T0 = datetime(2026, 3, 1, 9, 0, 0)


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        s.add(User(email="grower@example.com", password_hash=generate_password_hash("pw"), is_active=True))

    return app


@pytest.fixture()
def s(app):
    session = app.extensions["sqlalchemy_sessionmaker"]()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def user(s):
    return s.query(User).filter(User.email == "grower@example.com").one()


def _culture(s, user, **fields):
    values = {"label": "LC-001", "culture_type": "liquid_culture", "health_rating": 5}
    values.update(fields)
    v = create_record(s, "culture", values, user, now=T0)
    s.commit()
    return v


def _count_versions(s, gid):
    return s.query(RecordVersion).filter(RecordVersion.record_group_id == gid).count()


def test_create_record_starts_at_version_one(s, user):
    v1 = _culture(s, user, volumeMl=500)
    assert v1.version == 1
    assert v1.amendment_type == "original"
    assert v1.amendment_reason is None
    assert v1.fields["volume_ml"] == 500
    assert v1.fields["notes"] is None

    assert history.get_amendment_log(s, v1.record_group_id) == {}
    current = history.get_current(s, v1.record_group_id)
    assert current.version == 1
    assert current.entity_type == "culture"
    assert current.created_at == T0
    assert current.is_archived is False


def test_create_record_requires_label(s, user):
    with pytest.raises(InvalidFieldValue):
        create_record(s, "culture", {"culture_type": "agar"}, user)
    with pytest.raises(InvalidFieldValue):
        create_record(s, "spawn_bag", {"label": "x"}, user)


def test_correction_records_old_and_new_values(s, user):
    v1 = _culture(s, user)
    gid = v1.record_group_id

    v2 = amend(s, gid, {"healthRating": 3}, "correction", "misread gauge", user, now=T0 + timedelta(hours=1))
    s.commit()

    assert v2.version == 2
    assert v2.amendment_type == "correction"
    assert v2.fields["health_rating"] == 3
    assert v2.fields["label"] == "LC-001"

    log = history.get_amendment_log(s, gid)
    entries = log[v2.id]
    assert len(entries) == 1
    assert entries[0].changes_summary == {"health_rating": {"old": 5, "new": 3}}
    assert entries[0].reason == "misread gauge"
    assert entries[0].amended_by == user.id
    assert entries[0].amended_by_email == "grower@example.com"

    versions = history.get_versions(s, gid)
    assert [v.version for v in versions] == [2, 1]
    assert versions[0].is_current and not versions[1].is_current
    assert versions[1].valid_to == versions[0].valid_from
    assert versions[0].valid_to is None
    assert versions[0].fields == history.get_current(s, gid).fields


def test_void_archives_without_touching_fields(s, user):
    v1 = _culture(s, user)
    gid = v1.record_group_id
    amend(s, gid, {"health_rating": 3}, "correction", "misread gauge", user, now=T0 + timedelta(hours=1))
    v3 = amend(s, gid, {}, "void", "duplicate entry", user, now=T0 + timedelta(hours=2))
    s.commit()

    assert v3.version == 3
    assert history.get_amendment_log(s, gid)[v3.id][0].changes_summary == {}
    assert v3.fields["health_rating"] == 3

    assert gid not in [r.record_group_id for r in history.list_current(s)]
    assert gid in [r.record_group_id for r in history.list_current(s, include_archived=True)]
    assert len(history.get_versions(s, gid)) == 3

    current = history.get_current(s, gid)
    assert current.is_archived is True
    assert current.archive_reason == "duplicate entry"
    assert current.archived_at == T0 + timedelta(hours=2)
    assert current.outcome is None


def test_void_cannot_change_fields(s, user):
    v1 = _culture(s, user)
    gid = v1.record_group_id

    with pytest.raises(InvalidFieldValue):
        amend(s, gid, {"health_rating": 1, "label": "RENAMED"}, "void", "duplicate entry", user)
    s.commit()
    assert _count_versions(s, gid) == 1

    v2 = amend(s, gid, None, "void", "duplicate entry", user)
    s.commit()
    assert v2.fields == v1.fields
    assert history.get_current(s, gid).fields["label"] == "LC-001"


def test_many_amendments_keep_a_contiguous_chain(s, user):
    v1 = _culture(s, user)
    gid = v1.record_group_id
    for i in range(5):
        amend(s, gid, {"notes": f"check {i}"}, "update", f"weekly check {i}", user, now=T0 + timedelta(days=i + 1))
    s.commit()

    versions = list(reversed(history.get_versions(s, gid)))
    assert [v.version for v in versions] == [1, 2, 3, 4, 5, 6]
    assert sum(1 for v in versions if v.is_current) == 1
    assert versions[-1].is_current
    for prev, nxt in zip(versions, versions[1:]):
        assert prev.valid_to == nxt.valid_from
    assert history.verify_chain(s, gid) == []


def test_valid_from_never_runs_backwards(s, user):
    v1 = _culture(s, user)
    v2 = amend(s, v1.record_group_id, {"notes": "late"}, "update", "clock skew", user, now=T0 - timedelta(hours=3))
    assert v2.valid_from == T0


def test_noop_amendment_is_rejected(s, user):
    v1 = _culture(s, user)
    gid = v1.record_group_id

    with pytest.raises(NoOpAmendment):
        amend(s, gid, {"health_rating": 5}, "correction", "same value", user)
    with pytest.raises(NoOpAmendment):
        amend(s, gid, {}, "update", "nothing", user)
    # 5.0 and 5 are the same rating
    with pytest.raises(NoOpAmendment):
        amend(s, gid, {"health_rating": 5.0}, "correction", "float form", user)
    with pytest.raises(NoOpAmendment):
        amend(s, gid, {"label": " LC-001 "}, "correction", "whitespace only", user)
    s.commit()

    assert _count_versions(s, gid) == 1


def test_reason_and_type_are_required(s, user):
    v1 = _culture(s, user)
    gid = v1.record_group_id

    with pytest.raises(MissingReason):
        amend(s, gid, {"health_rating": 2}, "correction", "   ", user)
    with pytest.raises(MissingReason):
        amend(s, gid, {}, "void", None, user)
    with pytest.raises(InvalidAmendmentType):
        amend(s, gid, {"health_rating": 2}, "original", "rewrite v1", user)
    with pytest.raises(InvalidAmendmentType):
        amend(s, gid, {"health_rating": 2}, "delete", "gone", user)
    # merge versions are only written by merge(), with one log entry per source
    with pytest.raises(InvalidAmendmentType):
        amend(s, gid, {"notes": "x"}, "merge", "no sources", user)
    s.commit()

    assert _count_versions(s, gid) == 1


def test_overlong_reason_is_rejected_not_truncated(s, user):
    v1 = _culture(s, user)
    gid = v1.record_group_id

    with pytest.raises(InvalidFieldValue, match="at most 512"):
        amend(s, gid, {"health_rating": 2}, "correction", "x" * 513, user)
    # The "Restored version N: " prefix counts toward the limit.
    with pytest.raises(InvalidFieldValue):
        restore_version(s, gid, v1.id, "y" * 500, user)
    s.commit()
    assert _count_versions(s, gid) == 1

    v2 = amend(s, gid, {"health_rating": 2}, "correction", "z" * 512, user)
    assert v2.amendment_reason == "z" * 512


def test_unknown_group_and_invalid_fields(s, user):
    v1 = _culture(s, user)

    with pytest.raises(RecordGroupNotFound):
        amend(s, "does-not-exist", {"health_rating": 2}, "correction", "typo", user)
    with pytest.raises(RecordGroupNotFound):
        history.get_versions(s, "does-not-exist")
    with pytest.raises(InvalidFieldValue):
        amend(s, v1.record_group_id, {"health_rating": 9}, "correction", "out of range", user)
    with pytest.raises(InvalidFieldValue):
        amend(s, v1.record_group_id, {"colour": "white"}, "correction", "unknown field", user)
    with pytest.raises(InvalidFieldValue):
        amend(s, v1.record_group_id, {"label": ""}, "correction", "blank label", user)
    s.commit()

    assert _count_versions(s, v1.record_group_id) == 1


def test_archived_record_rejects_amendments(s, user):
    v1 = _culture(s, user)
    gid = v1.record_group_id
    archive(s, gid, "contaminated, binned", user)
    s.commit()

    with pytest.raises(RecordArchived):
        amend(s, gid, {"notes": "after the fact"}, "update", "late note", user)
    with pytest.raises(RecordArchived):
        archive(s, gid, "again", user)
    assert _count_versions(s, gid) == 2


def test_expected_version_mismatch_is_rejected(s, user):
    v1 = _culture(s, user)
    gid = v1.record_group_id
    amend(s, gid, {"notes": "first"}, "update", "first edit", user, expected_version=1)
    s.commit()

    with pytest.raises(ConcurrentModification):
        amend(s, gid, {"notes": "stale"}, "update", "stale edit", user, expected_version=1)
    assert _count_versions(s, gid) == 2


def test_losing_writer_gets_concurrent_modification(s, user, monkeypatch):
    v1 = _culture(s, user)
    gid = v1.record_group_id
    amend(s, gid, {"notes": "winner"}, "update", "first writer", user)
    s.commit()

    # Second writer read version 1 before the first writer committed version 2.
    monkeypatch.setattr(store, "current_version", lambda _s, _gid: v1)
    with pytest.raises(ConcurrentModification):
        amend(s, gid, {"notes": "loser"}, "update", "second writer", user)
    s.commit()

    versions = history.get_versions(s, gid)
    assert [v.version for v in versions] == [2, 1]
    assert versions[0].fields["notes"] == "winner"


def test_restore_version(s, user):
    v1 = _culture(s, user, notes="healthy")
    gid = v1.record_group_id
    amend(s, gid, {"notes": "looks odd", "health_rating": 2}, "update", "inspection", user, now=T0 + timedelta(hours=1))

    v3 = restore_version(s, gid, v1.id, "false alarm", user, now=T0 + timedelta(hours=2))
    s.commit()

    assert v3.version == 3
    assert v3.amendment_type == "update"
    assert v3.amendment_reason == "Restored version 1: false alarm"
    assert v3.fields == v1.fields
    summary = history.get_amendment_log(s, gid)[v3.id][0].changes_summary
    assert summary == {
        "health_rating": {"old": 2, "new": 5},
        "notes": {"old": "looks odd", "new": "healthy"},
    }

    with pytest.raises(NoOpAmendment):
        restore_version(s, gid, v1.id, "again", user)
    with pytest.raises(VersionNotFound):
        restore_version(s, gid, "not-a-version", "typo", user)


def test_merge_folds_duplicates_into_target(s, user):
    target = _culture(s, user, label="LC-001")
    dup = create_record(s, "culture", {"label": "LC-001 (dup)", "health_rating": 4}, user, now=T0)
    s.commit()

    new = merge(
        s,
        target.record_group_id,
        [dup.record_group_id],
        {"notes": "merged duplicate"},
        "entered twice",
        user,
        now=T0 + timedelta(hours=1),
    )
    s.commit()

    assert new.version == 2
    assert new.amendment_type == "merge"
    entries = history.get_amendment_log(s, target.record_group_id)[new.id]
    assert [e.merged_from_group_id for e in entries] == [dup.record_group_id]
    assert entries[0].changes_summary == {"notes": {"old": None, "new": "merged duplicate"}}

    source = history.get_current(s, dup.record_group_id)
    assert source.is_archived
    assert source.archive_reason == f"Merged into {target.record_group_id}: entered twice"
    active = [r.record_group_id for r in history.list_current(s)]
    assert target.record_group_id in active
    assert dup.record_group_id not in active
    assert history.verify_chain(s, dup.record_group_id) == []


def test_merge_guards(s, user):
    target = _culture(s, user)
    grow = create_record(s, "grow", {"name": "Tub 1"}, user, now=T0)
    other = create_record(s, "culture", {"label": "LC-002"}, user, now=T0)
    s.commit()

    with pytest.raises(NoOpAmendment):
        merge(s, target.record_group_id, [], {}, "nothing", user)
    with pytest.raises(NoOpAmendment):
        merge(s, target.record_group_id, [target.record_group_id], {}, "self", user)
    with pytest.raises(NoOpAmendment):
        merge(s, target.record_group_id, [grow.record_group_id], {}, "wrong type", user)
    with pytest.raises(RecordGroupNotFound):
        merge(s, target.record_group_id, ["missing"], {}, "gone", user)

    archive(s, other.record_group_id, "binned", user)
    s.commit()
    with pytest.raises(RecordArchived):
        merge(s, target.record_group_id, [other.record_group_id], {}, "archived source", user)

    assert _count_versions(s, target.record_group_id) == 1


def test_version_as_of(s, user):
    v1 = _culture(s, user)
    gid = v1.record_group_id
    v2 = amend(s, gid, {"health_rating": 4}, "update", "slower growth", user, now=T0 + timedelta(hours=1))
    s.commit()

    assert history.version_as_of(s, gid, T0 - timedelta(seconds=1)) is None
    assert history.version_as_of(s, gid, T0).id == v1.id
    assert history.version_as_of(s, gid, T0 + timedelta(minutes=30)).id == v1.id
    assert history.version_as_of(s, gid, T0 + timedelta(hours=1)).id == v2.id
    assert history.version_as_of(s, gid, T0 + timedelta(days=30)).id == v2.id


def test_list_current_filters_and_pages(s, user):
    _culture(s, user)
    create_record(s, "culture", {"label": "LC-002"}, user, now=T0 + timedelta(minutes=1))
    create_record(s, "grow", {"name": "Tub 1", "spawnWeight": 500.0}, user, now=T0 + timedelta(minutes=2))
    s.commit()

    assert len(history.list_current(s)) == 3
    cultures = history.list_current(s, entity_type="culture")
    assert [r.fields["label"] for r in cultures] == ["LC-002", "LC-001"]
    assert len(history.list_current(s, entity_type="culture", limit=1, offset=1)) == 1

    grow = history.list_current(s, entity_type="grow")[0]
    assert grow.fields["spawn_weight"] == 500


def test_versions_and_log_rows_are_append_only(s, user):
    v1 = _culture(s, user)
    v2 = amend(s, v1.record_group_id, {"notes": "x"}, "update", "note", user)
    s.commit()

    v2.amendment_reason = "rewritten"
    with pytest.raises(ImmutableRecordError):
        s.flush()
    s.rollback()

    entry = history.get_amendment_log(s, v1.record_group_id)[v2.id][0]
    s.delete(entry)
    with pytest.raises(ImmutableRecordError):
        s.flush()
    s.rollback()

    assert _count_versions(s, v1.record_group_id) == 2


def test_verify_chain_reports_gaps(s, user):
    v1 = _culture(s, user)
    gid = v1.record_group_id
    group = store.get_group(s, gid)
    # Bypass the engine: a version without reason or log entry, skipping a number.
    store.insert_version(
        s,
        group,
        version=3,
        amendment_type="update",
        amendment_reason=None,
        fields=dict(v1.fields),
        valid_from=T0 + timedelta(hours=1),
        user=user,
    )
    s.commit()

    problems = history.verify_chain(s, gid)
    assert "Expected version 2, found 3." in problems
    assert "Version 3 has no amendment reason." in problems
    assert "Version 3 has no amendment log entry." in problems


def test_audit_events_written(s, user):
    v1 = _culture(s, user)
    amend(s, v1.record_group_id, {"notes": "x"}, "update", "note", user)
    s.commit()

    actions = [
        e.action
        for e in s.query(AuditEvent).filter(AuditEvent.entity_id == v1.record_group_id).order_by(AuditEvent.id)
    ]
    assert actions == ["records.create", "records.amend"]


def test_list_current_pages_over_active_records_only(s, user):
    old = _culture(s, user, label="LC-001")
    create_record(s, "culture", {"label": "LC-002"}, user, now=T0 + timedelta(minutes=1))
    newest = create_record(s, "culture", {"label": "LC-003"}, user, now=T0 + timedelta(minutes=2))
    archive(s, newest.record_group_id, "binned", user, now=T0 + timedelta(hours=1))
    s.commit()

    page = history.list_current(s, limit=2)
    assert [r.fields["label"] for r in page] == ["LC-002", "LC-001"]
    assert history.list_current(s, limit=2, offset=1)[0].record_group_id == old.record_group_id
    assert history.list_current(s, limit=2, offset=2) == []

    heads = store.current_versions(s, include_archived=False)
    assert [v.amendment_type for _, v in heads] == ["original", "original"]
    assert len(store.current_versions(s, limit=1, offset=0)) == 1
    assert history.list_current(s, include_archived=True, limit=1)[0].is_archived


def test_merge_locks_groups_in_id_order(s, user, monkeypatch):
    first = _culture(s, user, label="LC-001")
    second = create_record(s, "culture", {"label": "LC-001b"}, user, now=T0)
    s.commit()

    locked = []
    get_group = store.get_group

    def recording_get_group(session, record_group_id, *, for_update=False):
        if for_update:
            locked.append(record_group_id)
        return get_group(session, record_group_id, for_update=for_update)

    monkeypatch.setattr(store, "get_group", recording_get_group)
    ids = sorted([first.record_group_id, second.record_group_id])
    # Target is the later id, so locking the target first would invert the order.
    merge(s, ids[1], [ids[0]], {}, "entered twice", user)
    s.commit()

    assert locked == ids
