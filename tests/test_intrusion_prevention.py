from __future__ import annotations

from devguard.core.intrusion_prevention import IntrusionPreventionConfigurator, render_jail
from devguard.models.changes import OperationResult, StepStatus
from devguard.models.intent import BanPolicy, HardeningIntent


def test_render_jail_carries_policy_and_port(settings) -> None:
    intent = HardeningIntent(management_port=2222, ban=BanPolicy(max_retry=3, find_time=300, ban_time=86400))

    content = render_jail(intent, settings)

    assert "[sshd]" in content
    assert "port      = 2222" in content
    assert "maxretry  = 3" in content
    assert "findtime  = 300" in content
    assert "bantime   = 86400" in content
    assert "banaction = ufw" in content
    assert f"logpath   = {settings.ssh_log_path}" in content


def test_configure_writes_jail_and_restarts_service(runner, gate, settings) -> None:
    result = OperationResult(step="intrusion-prevention")

    IntrusionPreventionConfigurator(runner, gate, settings).configure(HardeningIntent(), result)

    assert settings.jail_path.read_text(encoding="utf-8") == render_jail(HardeningIntent(), settings)
    assert runner.commands("systemctl") == [
        ["systemctl", "enable", "fail2ban"],
        ["systemctl", "restart", "fail2ban"],
    ]
    assert result.status is StepStatus.SUCCEEDED


def test_unchanged_jail_is_not_rewritten(runner, gate, settings) -> None:
    configurator = IntrusionPreventionConfigurator(runner, gate, settings)
    configurator.configure(HardeningIntent(), OperationResult(step="intrusion-prevention"))

    second = OperationResult(step="intrusion-prevention")
    configurator.configure(HardeningIntent(), second)

    assert [change.operation for change in second.applied] == ["enable", "restart"]
    assert any("already matches" in note for note in second.diagnostics)


def test_service_restart_failure_is_only_a_warning(runner, gate, settings) -> None:
    runner.on("systemctl", "restart", stderr="Job for fail2ban.service failed.", exit_code=1)
    result = OperationResult(step="intrusion-prevention")

    IntrusionPreventionConfigurator(runner, gate, settings).configure(HardeningIntent(), result)

    assert result.status is StepStatus.WARNING
    assert result.success
    assert "restart" in result.warnings[0]
    assert any("journalctl -u fail2ban" in hint for hint in result.next_steps)


def test_dry_run_leaves_jail_absent(runner, dry_gate, settings) -> None:
    result = OperationResult(step="intrusion-prevention")

    IntrusionPreventionConfigurator(runner, dry_gate, settings).configure(HardeningIntent(), result)

    assert not settings.jail_path.exists()
    assert runner.calls == []
    assert [change.operation for change in result.planned] == ["write", "enable", "restart"]
