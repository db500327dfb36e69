"""Tests for CLI argument handling helpers."""

import json
from pathlib import Path

import pytest

from plan_adapt.cli import _build_parser, _load_plan, _parse_servers


def test_parser_defaults():
    args = _build_parser().parse_args(["What is at MAIN?"])
    assert args.question == "What is at MAIN?"
    assert args.platform == "watsonx"
    assert args.model_id is None
    assert args.servers == []
    assert args.max_retries is None
    assert not args.interactive


def test_parser_repeatable_servers():
    args = _build_parser().parse_args(
        ["--server", "IoT=iot.py", "--server", "FMSR=fmsr.py", "--max-retries", "0", "Q"]
    )
    assert _parse_servers(args.servers) == {"IoT": Path("iot.py"), "FMSR": Path("fmsr.py")}
    assert args.max_retries == 0


def test_parse_servers_rejects_missing_equals():
    with pytest.raises(SystemExit):
        _parse_servers(["iot.py"])


def test_load_plan(tmp_path):
    path = tmp_path / "plan.json"
    path.write_text(
        json.dumps(
            {
                "id": "plan-file",
                "goal": "List sensors",
                "steps": [
                    {"id": "step-1", "order": 1, "action": "sites"},
                    {"id": "step-2", "order": 2, "action": "assets", "dependencies": ["step-1"]},
                ],
            }
        )
    )
    plan = _load_plan(path)
    assert plan.id == "plan-file"
    assert plan.get_step("step-2").dependencies == ["step-1"]


def test_load_plan_unreadable(tmp_path, capsys):
    path = tmp_path / "plan.json"
    path.write_text("{not json")
    with pytest.raises(SystemExit):
        _load_plan(path)
    assert "cannot read plan file" in capsys.readouterr().err
