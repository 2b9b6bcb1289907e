"""Tests for the CLI."""

import json
import tempfile
from pathlib import Path

import httpx
import pytest
from click.testing import CliRunner

from solar_ops import cli as cli_mod
from solar_ops.cli import main
from solar_ops.core import customers as customers_mod
from solar_ops.core import employees as employees_mod
from solar_ops.core import tasks as tasks_mod
from solar_ops.db.engine import init_db
from solar_ops.integrations import slack as slack_mod
from solar_ops.web.app import create_app


@pytest.fixture
def cli_env(monkeypatch):
    """Seed a server database and point the CLI at the app in-process."""
    with tempfile.TemporaryDirectory() as tmp:
        tmp = Path(tmp)
        db_path = tmp / "server.db"
        db = init_db(db_path)
        asha = employees_mod.create_employee(db, "Asha", "98450", "field", token="asha-token")
        ravi = employees_mod.create_employee(db, "Ravi", "98451", "field")
        employees_mod.create_employee(db, "Priya", "98452", "admin", token="admin-token")
        customer = customers_mod.create_customer(db, "Meena", "9845012345", plant_price="5000")
        bill = tasks_mod.create_task(db, "Generate bill", "bill_generation", asha, customer["id"])
        pay = tasks_mod.create_task(db, "Collect advance", "payment_collection", asha, customer["id"])
        db.close()

        app = create_app(db_path=db_path, upload_dir=tmp / "uploads")
        monkeypatch.setattr(cli_mod, "_transport", lambda: httpx.ASGITransport(app=app))
        for key, value in {
            "SOPS_API_BASE": "http://testserver/api",
            "SOPS_TOKEN": "asha-token",
            "SOPS_USER_ID": asha.id,
            "SOPS_USER_NAME": "Asha",
            "SOPS_USER_PHONE": "98450",
            "SOPS_DB_PATH": str(db_path),
        }.items():
            monkeypatch.setenv(key, value)
        monkeypatch.delenv("SLACK_BOT_TOKEN", raising=False)
        monkeypatch.delenv("SOPS_WORK_TYPES", raising=False)

        yield CliRunner(), {"bill": bill.id, "pay": pay.id, "ravi": ravi.id}, tmp


class TestCLI:
    def test_help(self, cli_env):
        runner, _, _ = cli_env
        result = runner.invoke(main, ["--help"])
        assert result.exit_code == 0
        assert "Solar Ops" in result.output

    def test_not_signed_in(self, cli_env, monkeypatch):
        runner, _, _ = cli_env
        monkeypatch.delenv("SOPS_TOKEN")
        result = runner.invoke(main, ["board"])
        assert result.exit_code == 1
        assert "Not signed in" in result.output

    def test_default_transport_is_network(self):
        assert cli_mod._transport() is None

    def test_work_types(self, cli_env):
        runner, _, _ = cli_env
        result = runner.invoke(main, ["work-types"])
        assert result.exit_code == 0
        assert "dcr_creation: DCR Creation [document_bundle]" in result.output


class TestBoardCommands:
    def test_board(self, cli_env):
        runner, ids, _ = cli_env
        result = runner.invoke(main, ["board"])
        assert result.exit_code == 0, result.output
        assert "Pending (2)" in result.output
        assert f"TASK-{ids['bill']}: Generate bill" in result.output

    def test_board_json_filtered(self, cli_env):
        runner, ids, _ = cli_env
        result = runner.invoke(main, ["board", "--work-type", "payment_collection", "--json"])
        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert [t["id"] for t in data["pending"]] == [ids["pay"]]
        assert data["in-progress"] == []

    def test_show(self, cli_env):
        runner, ids, _ = cli_env
        result = runner.invoke(main, ["show", ids["pay"]])
        assert result.exit_code == 0, result.output
        assert "Work type: Payment Collection" in result.output
        assert "remaining_amount: 5000" in result.output

    def test_show_unknown(self, cli_env):
        runner, _, _ = cli_env
        result = runner.invoke(main, ["show", "999"])
        assert result.exit_code == 1
        assert "Task not found: 999" in result.output

    def test_next_then_illegal_move(self, cli_env):
        runner, ids, _ = cli_env
        result = runner.invoke(main, ["next", ids["bill"]])
        assert result.exit_code == 0, result.output
        assert "Task moved to In Progress" in result.output

        result = runner.invoke(main, ["move", ids["bill"], "pending"])
        assert result.exit_code == 1
        assert "unidirectional" in result.output


class TestStageCommands:
    def test_pay(self, cli_env):
        runner, ids, tmp = cli_env
        proof = tmp / "receipt.jpg"
        proof.write_bytes(b"\xff\xd8")
        result = runner.invoke(main, ["pay", ids["pay"], "2000", str(proof)])
        assert result.exit_code == 0, result.output
        assert "Payment recorded successfully!" in result.output

    def test_pay_over_remaining(self, cli_env):
        runner, ids, tmp = cli_env
        proof = tmp / "receipt.jpg"
        proof.write_bytes(b"\xff\xd8")
        result = runner.invoke(main, ["pay", ids["pay"], "5000.01", str(proof)])
        assert result.exit_code == 1
        assert "cannot exceed" in result.output

    def test_pay_on_wrong_task(self, cli_env):
        runner, ids, tmp = cli_env
        proof = tmp / "receipt.jpg"
        proof.write_bytes(b"\xff\xd8")
        result = runner.invoke(main, ["pay", ids["bill"], "10", str(proof)])
        assert result.exit_code == 1
        assert "Bill Generation task" in result.output

    def test_upload(self, cli_env):
        runner, ids, tmp = cli_env
        bill = tmp / "bill.pdf"
        bill.write_bytes(b"%PDF")
        result = runner.invoke(main, ["upload", ids["bill"], f"paybill_document={bill}"])
        assert result.exit_code == 0, result.output
        assert "documents uploaded" in result.output

    def test_upload_bad_pair(self, cli_env):
        runner, ids, _ = cli_env
        result = runner.invoke(main, ["upload", ids["bill"], "no-equals-sign"])
        assert result.exit_code == 2


class TestReassignCommands:
    def test_reassign_and_approve(self, cli_env, monkeypatch):
        runner, ids, _ = cli_env
        result = runner.invoke(main, ["reassign", ids["bill"], ids["ravi"]])
        assert result.exit_code == 0, result.output
        assert "Reassignment request sent for approval" in result.output

        result = runner.invoke(main, ["approvals", "list"])
        assert result.exit_code == 0
        approval_ref = result.output.split(":")[0].strip()
        assert approval_ref.startswith("TASK-")

        result = runner.invoke(main, ["approvals", "approve", approval_ref.removeprefix("TASK-")])
        assert result.exit_code == 1
        assert "Only admins" in result.output

        monkeypatch.setenv("SOPS_TOKEN", "admin-token")
        result = runner.invoke(main, ["approvals", "approve", approval_ref.removeprefix("TASK-")])
        assert result.exit_code == 0, result.output
        assert "approved successfully" in result.output

    def test_reassign_to_self(self, cli_env):
        runner, ids, _ = cli_env
        result = runner.invoke(main, ["reassign", ids["bill"], "1"])
        assert result.exit_code == 1


class TestServerCommands:
    def test_init_db_with_admin(self, cli_env, monkeypatch):
        runner, _, tmp = cli_env
        monkeypatch.setenv("SOPS_DB_PATH", str(tmp / "fresh.db"))
        result = runner.invoke(main, ["init-db", "--admin", "Priya"])
        assert result.exit_code == 0, result.output
        assert "Admin created: 1 (Priya)" in result.output
        assert "Token: " in result.output


class TestSlackCommands:
    def test_post_summary(self, cli_env, monkeypatch):
        runner, _, _ = cli_env
        sent = []

        def fake_send(token, channel, text, blocks=None, client=None):
            sent.append(blocks)
            return slack_mod.SlackMessage(channel="C123", ts="1.0", text=text)

        monkeypatch.setattr(slack_mod, "send_message", fake_send)
        result = runner.invoke(main, ["post-summary", "--channel", "#ops"])
        assert result.exit_code == 0, result.output
        assert "Summary posted to C123" in result.output
        assert "Pending: 2" in sent[0][0]["text"]["text"]

    def test_post_summary_needs_channel(self, cli_env, monkeypatch):
        runner, _, _ = cli_env
        monkeypatch.delenv("SOPS_SLACK_CHANNEL", raising=False)
        result = runner.invoke(main, ["post-summary"])
        assert result.exit_code == 1

    def test_move_notify_failure_is_reported(self, cli_env):
        runner, ids, _ = cli_env
        result = runner.invoke(main, ["move", ids["bill"], "in-progress", "--notify", "#ops"])
        assert result.exit_code == 0, result.output
        assert "Slack notification failed" in result.output
