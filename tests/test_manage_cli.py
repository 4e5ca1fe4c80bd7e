"""Tests for the operator CLI."""

from __future__ import annotations

import base64
import io
import json
from pathlib import Path

import pytest
from PIL import Image

import manage


@pytest.fixture
def cli_env(tmp_path, monkeypatch) -> Path:
    monkeypatch.setenv("USAGE_DB_PATH", str(tmp_path / "usage.db"))
    monkeypatch.setenv("RESULTS_ROOT", str(tmp_path / "results"))
    monkeypatch.setattr(manage, "setup_logging", lambda: None)
    return tmp_path


def _write_jpeg(path: Path) -> Path:
    buffer = io.BytesIO()
    Image.new("RGB", (48, 64), (1, 2, 3)).save(buffer, format="JPEG")
    path.write_bytes(buffer.getvalue())
    return path


def test_set_plan_and_usage(cli_env, capsys) -> None:
    assert manage.main(["set-plan", "--merchant", "shop-1", "--plan", "MAISON"]) == 0
    plan = json.loads(capsys.readouterr().out)
    assert plan["included_quota"] == 2000
    assert plan["allow_overage"] is False

    assert manage.main(["usage", "--merchant", "shop-1"]) == 0
    usage = json.loads(capsys.readouterr().out)
    assert usage["plan"] == "MAISON"
    assert usage["used"] == 0
    assert usage["remaining"] == 2000
    assert usage["estimated_bill"]["total"] == "299.00"


def test_mock_tryon_then_history(cli_env, capsys) -> None:
    customer = _write_jpeg(cli_env / "customer.jpg")
    product = _write_jpeg(cli_env / "product.jpg")
    argv = [
        "tryon",
        "--customer",
        str(customer),
        "--product",
        str(product),
        "--merchant",
        "shop-1",
        "--mock",
    ]

    assert manage.main(argv) == 0
    result = json.loads(capsys.readouterr().out)
    assert result["served_from_cache"] is False
    assert result["recommended_size"] == "M"
    assert result["image_ref"].startswith("file://")

    assert manage.main(["history", "--merchant", "shop-1"]) == 0
    history = json.loads(capsys.readouterr().out)
    assert len(history) == 1
    assert history[0]["consumed"] == 1


def test_tryon_reports_typed_error(cli_env, capsys) -> None:
    customer = "data:image/gif;base64," + base64.b64encode(b"GIF89a" + b"\x00" * 8).decode()
    argv = ["tryon", "--customer", customer, "--product", customer, "--merchant", "m", "--mock"]

    assert manage.main(argv) == 1
    payload = json.loads(capsys.readouterr().out)
    assert payload["error"] == "UNSUPPORTED_FORMAT"


def test_without_command_prints_help(capsys) -> None:
    assert manage.main([]) == 1
    assert "usage" in capsys.readouterr().out.lower()
