import asyncio

from typer.testing import CliRunner

import salesflow.persistence as persistence
from salesflow.cli import app
from salesflow.persistence import (
    DeliveryAttempt,
    DeliveryFailure,
    DeliveryStatus,
    InMemoryRepository,
    WebhookEvent,
    WebhookSubscription,
)

WELCOME = """
id: welcome
name: Welcome series
steps:
  - type: action
    action: send_email
    config:
      subject: "Welcome {{customer_name}}"
  - type: end
"""

FOLLOW_UP = """
- id: follow-up
  name: Follow up
  steps:
    - type: wait
      days: 2
    - type: end
- id: hourly-report
  name: Hourly report
  trigger:
    type: schedule
    interval_seconds: 3600
  steps:
    - type: action
      action: create_task
      config:
        title: Review orders
"""


def _setup_repo() -> InMemoryRepository:
    repo = InMemoryRepository()
    persistence._repository_instance = repo
    return repo


def _load(runner, tmp_path, name, content):
    path = tmp_path / name
    path.write_text(content)
    result = runner.invoke(app, ["workflow", "load", str(path)])
    assert result.exit_code == 0, f"Load failed: {result.stdout}"
    return result


def test_load_trigger_and_show_workflow(tmp_path):
    _setup_repo()
    runner = CliRunner()
    loaded = _load(runner, tmp_path, "welcome.yaml", WELCOME)
    assert "Registered welcome" in loaded.stdout

    definitions = runner.invoke(app, ["workflow", "list", "--definitions"])
    assert "welcome" in definitions.stdout
    assert "Welcome series" in definitions.stdout

    triggered = runner.invoke(
        app,
        ["workflow", "trigger", "welcome", "--payload", '{"customer_email": "ann@example.com", "customer_name": "Ann"}'],
    )
    assert triggered.exit_code == 0, triggered.stdout
    execution_id, status = triggered.stdout.strip().split("\t")
    assert status == "completed"

    listed = runner.invoke(app, ["workflow", "list"])
    assert execution_id in listed.stdout

    shown = runner.invoke(app, ["workflow", "show", execution_id])
    assert shown.exit_code == 0
    assert f"Execution {execution_id}: completed" in shown.stdout
    assert "- [0] action: success" in shown.stdout
    assert "- [1] end: success" in shown.stdout


def test_trigger_errors_exit_with_code_one(tmp_path):
    _setup_repo()
    runner = CliRunner()
    _load(runner, tmp_path, "welcome.yaml", WELCOME)

    missing = runner.invoke(app, ["workflow", "trigger", "nope"])
    assert missing.exit_code == 1
    assert "not found" in missing.stdout

    bad_payload = runner.invoke(app, ["workflow", "trigger", "welcome", "--payload", "{oops"])
    assert bad_payload.exit_code == 1
    assert "not valid JSON" in bad_payload.stdout

    not_object = runner.invoke(app, ["workflow", "trigger", "welcome", "--payload", "[1]"])
    assert not_object.exit_code == 1


def test_show_missing_execution():
    _setup_repo()
    result = CliRunner().invoke(app, ["workflow", "show", "missing-id"])
    assert result.exit_code == 1
    assert "Execution not found" in result.stdout


def test_load_rejects_invalid_definition(tmp_path):
    _setup_repo()
    path = tmp_path / "bad.yaml"
    path.write_text("id: bad\nsteps: []\n")
    result = CliRunner().invoke(app, ["workflow", "load", str(path)])
    assert result.exit_code == 1
    assert "Invalid workflow definition" in result.stdout

    absent = CliRunner().invoke(app, ["workflow", "load", str(tmp_path / "absent.yaml")])
    assert absent.exit_code == 1


def test_cancel_and_cron_run(tmp_path):
    repo = _setup_repo()
    runner = CliRunner()
    _load(runner, tmp_path, "many.yaml", FOLLOW_UP)

    triggered = runner.invoke(app, ["workflow", "trigger", "follow-up"])
    execution_id, status = triggered.stdout.strip().split("\t")
    assert status == "waiting"

    cancelled = runner.invoke(app, ["workflow", "cancel", execution_id])
    assert cancelled.exit_code == 0
    assert "cancelled" in cancelled.stdout
    again = runner.invoke(app, ["workflow", "cancel", execution_id])
    assert again.exit_code == 1

    cron = runner.invoke(app, ["cron", "run"])
    assert cron.exit_code == 0, cron.stdout
    assert "Scheduled: 1 created" in cron.stdout
    assert "Resumed: 0 resumed" in cron.stdout
    assert "Webhook retries: 0 processed" in cron.stdout
    assert "Cleanup: 0 events removed" in cron.stdout
    scheduled = asyncio.run(repo.list_executions(workflow_id="hourly-report"))
    assert len(scheduled) == 1

    second = runner.invoke(app, ["cron", "run", "--skip-webhooks"])
    assert "Scheduled: 0 created, 1 skipped" in second.stdout
    assert "Webhook retries" not in second.stdout
    assert "Cleanup" not in second.stdout


def test_webhook_commands():
    repo = _setup_repo()
    subscription = WebhookSubscription(
        tenant_id="shop-a", url="https://erp.example.com/h", events=["order.created"], secret="s"
    )
    event = WebhookEvent(tenant_id="shop-a", event_type="order.created")
    attempt = DeliveryAttempt(
        subscription_id=subscription.id,
        event_id=event.id,
        status=DeliveryStatus.FAILED,
        http_status=500,
        error_code="server_error",
        exhausted=True,
    )
    failure = DeliveryFailure(
        subscription_id=subscription.id,
        event_id=event.id,
        attempt_id=attempt.id,
        attempt_number=1,
        reason="server_error: HTTP 500",
    )

    async def seed():
        await repo.create_subscription(subscription)
        await repo.create_event(event)
        await repo.record_attempt(attempt)
        await repo.record_failure(failure)

    asyncio.run(seed())
    runner = CliRunner()

    listed = runner.invoke(app, ["webhook", "list", "--tenant", "shop-a"])
    assert subscription.id in listed.stdout
    assert "https://erp.example.com/h" in listed.stdout
    assert "No webhooks found" in runner.invoke(app, ["webhook", "list", "--tenant", "shop-b"]).stdout

    logs = runner.invoke(app, ["webhook", "logs", subscription.id])
    assert logs.exit_code == 0
    assert "server_error exhausted" in logs.stdout

    candidates = runner.invoke(app, ["webhook", "replay", subscription.id])
    assert failure.id in candidates.stdout

    unknown = runner.invoke(app, ["webhook", "replay", subscription.id, "nope"])
    assert unknown.exit_code == 1
    assert "not found" in unknown.stdout

    missing = runner.invoke(app, ["webhook", "logs", "missing"])
    assert missing.exit_code == 1

    summary = runner.invoke(app, ["webhook", "summary", "--tenant", "shop-a"])
    assert summary.exit_code == 0
    assert "0/1 ok" in summary.stdout
    assert "1 to replay" in summary.stdout

    cleaned = runner.invoke(app, ["webhook", "cleanup", "--days", "0"])
    assert cleaned.exit_code == 0
    assert "Removed 1 events" in cleaned.stdout
    assert asyncio.run(repo.get_event(event.id)) is None


AWAIT_PAYMENT = """
id: await-payment
name: Await payment
steps:
  - type: wait
    until:
      field: paid
      operator: eq
      value: true
    timeout_seconds: 3600
  - type: end
"""


def test_signal_resumes_and_stats(tmp_path):
    _setup_repo()
    runner = CliRunner()
    _load(runner, tmp_path, "await.yaml", AWAIT_PAYMENT)
    triggered = runner.invoke(
        app, ["workflow", "trigger", "await-payment", "--payload", '{"order_id": "o1"}']
    )
    execution_id, status = triggered.stdout.strip().split("\t")
    assert status == "waiting"

    bad = runner.invoke(app, ["workflow", "signal", execution_id, "--data", "[1]"])
    assert bad.exit_code == 1

    signalled = runner.invoke(
        app, ["workflow", "signal", execution_id, "--data", '{"paid": true}']
    )
    assert signalled.exit_code == 0, signalled.stdout
    assert signalled.stdout.strip() == f"{execution_id}\tcompleted"

    again = runner.invoke(app, ["workflow", "signal", execution_id, "--data", "{}"])
    assert again.exit_code == 1
    assert "not waiting" in again.stdout

    stats = runner.invoke(app, ["workflow", "stats", "await-payment"])
    assert stats.exit_code == 0
    assert '"successful_executions": 1' in stats.stdout
    assert '"success_rate": 100.0' in stats.stdout
