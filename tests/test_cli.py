import json

import pytest

from busy_gate.cli import build_parser, main


@pytest.fixture
def db(tmp_path, monkeypatch):
    monkeypatch.delenv("BUSY_LISTING_SINK", raising=False)
    monkeypatch.setenv("BUSY_PROPAGATION_MODE", "inline")
    return str(tmp_path / "cli.db")


def _run_json(capsys, db, *argv):
    rc = main(["--db", db, "--json", *argv])
    out = capsys.readouterr().out
    return rc, json.loads(out)


def test_no_command_prints_help(capsys):
    assert main([]) == 1
    assert "busy-gate" in capsys.readouterr().out


def test_engage_contend_release_cycle(capsys, db):
    rc, d = _run_json(capsys, db, "engage", "w1", "A", "--context", "gig-1")
    assert rc == 0
    assert d["acquired"] is True
    assert d["code"] == "ACQUIRED"

    rc, d = _run_json(capsys, db, "engage", "w1", "B")
    assert rc == 3
    assert d["acquired"] is False
    assert d["holder"] == "A"

    rc, d = _run_json(capsys, db, "busy")
    assert [r["subject"] for r in d] == ["w1"]

    rc, d = _run_json(capsys, db, "release", "w1", "A", "--value", "12.5", "--metadata", '{"rating": 4}')
    assert rc == 0
    assert d["history"]["value"] == 12.5
    assert d["history"]["metadata"] == {"rating": 4}

    rc, d = _run_json(capsys, db, "history", "--party", "A", "--role", "hirer")
    assert [r["subject"] for r in d] == ["w1"]

    rc, d = _run_json(capsys, db, "verify-history")
    assert rc == 0
    assert d == {"ok": True, "reason": "OK", "count": 1}


def test_release_by_non_holder_exits_2(capsys, db):
    main(["--db", db, "engage", "w1", "A"])
    capsys.readouterr()
    rc, d = _run_json(capsys, db, "release", "w1", "B")
    assert rc == 2
    assert d["code"] == "BUSY_E_NOT_OWNER"


def test_release_with_bad_metadata_exits_2(capsys, db):
    main(["--db", db, "engage", "w1", "A"])
    rc = main(["--db", db, "release", "w1", "A", "--metadata", "{not json"])
    assert rc == 2
    assert "invalid JSON" in capsys.readouterr().err


def test_release_with_non_object_metadata_exits_2(capsys, db):
    main(["--db", db, "engage", "w1", "A"])
    capsys.readouterr()
    rc = main(["--db", db, "release", "w1", "A", "--metadata", "[1]"])
    assert rc == 2
    err = capsys.readouterr().err
    assert "BUSY_E_BAD_REQUEST" in err
    assert "JSON object" in err


def test_allocate_and_status(capsys, db):
    rc, d = _run_json(capsys, db, "allocate", "w1", "h1", "--hours", "5")
    assert rc == 0
    assert d["granted_hours"] == 5.0
    allocation_id = d["record"]["allocation_id"]

    rc, d = _run_json(capsys, db, "status", "w1")
    assert d["quota"]["remaining_hours"] == 3.0
    assert d["lock"]["status"] == "free"

    rc, d = _run_json(capsys, db, "release-allocation", allocation_id)
    assert rc == 0
    assert d["released"] is True


def test_enable_unknown_subject_exits_2(capsys, db):
    rc = main(["--db", db, "enable", "nobody"])
    assert rc == 2
    assert "BUSY_E_NOT_FOUND" in capsys.readouterr().err


def test_sweep_and_reconcile_on_empty_store(capsys, db):
    rc, d = _run_json(capsys, db, "sweep")
    assert rc == 0
    assert d == {"freed": []}

    rc, d = _run_json(capsys, db, "reconcile")
    assert rc == 0
    assert d == {}


def test_text_output_for_engage(capsys, db):
    assert main(["--db", db, "engage", "w1", "A", "--ttl", "60"]) == 0
    out = capsys.readouterr().out
    assert out.startswith("ACQUIRED: w1 held by A until ")


def test_history_role_is_validated_by_parser():
    with pytest.raises(SystemExit):
        build_parser().parse_args(["history", "--role", "boss"])
