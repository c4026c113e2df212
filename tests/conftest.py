from __future__ import annotations

from pathlib import Path
from typing import Callable, Dict, List, Tuple, Union

import pytest

from devguard.core.checkpoint_manager import CheckpointManager
from devguard.core.command_runner import CommandResult, CommandRunner
from devguard.core.config import Settings
from devguard.core.errors import CommandExecutionError
from devguard.core.logging_manager import setup_logging
from devguard.core.plan_gate import GateMode, PlanGate

Response = Union[CommandResult, Callable[[List[str]], CommandResult]]

SSHD_CONFIG = """\
Include /etc/ssh/sshd_config.d/*.conf

#Port 22
PermitRootLogin yes
#PubkeyAuthentication yes
PasswordAuthentication yes
KbdInteractiveAuthentication no
UsePAM yes
X11Forwarding yes
PrintMotd no
AcceptEnv LANG LC_*
Subsystem sftp /usr/lib/openssh/sftp-server

Match User backup
    PasswordAuthentication yes
"""

PUBLIC_KEY = (
    "ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIG9xW0cG0mZf3yFq8Jr0Yk8i3Y2m0wQ6Hkq0bXkT0u1v alice@laptop\n"
)


class FakeRunner(CommandRunner):
    """Records every argv and answers from handlers registered by argv prefix."""

    def __init__(self) -> None:
        self.calls: List[List[str]] = []
        self._handlers: List[Tuple[Tuple[str, ...], Response]] = []

    def on(self, *prefix: str, stdout: str = "", stderr: str = "", exit_code: int = 0, handler=None) -> None:
        response = handler if handler is not None else CommandResult(stdout=stdout, stderr=stderr, exit_code=exit_code)
        self._handlers.append((prefix, response))

    def execute(self, command, args=(), *, allow_failure=False, timeout=None):
        argv = [command, *[str(a) for a in args]]
        self.calls.append(argv)
        result = CommandResult(stdout="", stderr="", exit_code=0)
        for prefix, response in reversed(self._handlers):
            if tuple(argv[: len(prefix)]) == prefix:
                result = response(argv) if callable(response) else response
                break
        if not result.succeeded and not allow_failure:
            raise CommandExecutionError(command, list(args), result.exit_code, result.stderr)
        return result

    def commands(self, program: str) -> List[List[str]]:
        return [argv for argv in self.calls if argv[0] == program]


class FakeUfw:
    """Just enough ufw behaviour to observe the resulting rule set."""

    def __init__(self) -> None:
        self.rules: List[str] = ["allow in 8080/tcp"]
        self.defaults = {"incoming": "allow", "outgoing": "allow"}
        self.enabled = True

    def __call__(self, argv: List[str]) -> CommandResult:
        args = argv[1:]
        if args == ["--force", "reset"]:
            self.rules, self.enabled = [], False
            self.defaults = {"incoming": "deny", "outgoing": "allow"}
        elif args[0] == "default":
            self.defaults[args[2]] = args[1]
        elif args == ["--force", "enable"]:
            self.enabled = True
        elif args == ["status", "verbose"]:
            state = "active" if self.enabled else "inactive"
            text = (
                f"Status: {state}\n"
                f"Default: {self.defaults['incoming']} (incoming), {self.defaults['outgoing']} (outgoing)\n"
            )
            return CommandResult(stdout=text + "\n".join(self.rules), stderr="", exit_code=0)
        elif args[0] in {"allow", "deny", "reject"}:
            rule = " ".join(args)
            if rule not in self.rules:
                self.rules.append(rule)
        return CommandResult(stdout="", stderr="", exit_code=0)


class FakeIptables:
    """Models custom chains, jumps and renames for one address family."""

    def __init__(self) -> None:
        self.chains: Dict[str, List[str]] = {"INPUT": [], "OUTPUT": [], "FORWARD": []}

    def __call__(self, argv: List[str]) -> CommandResult:
        args = argv[1:]
        op = args[0]
        if op == "-S":
            lines = [f"-P {name} ACCEPT" for name in ("INPUT", "FORWARD", "OUTPUT")]
            lines += [f"-N {name}" for name in self.chains if name not in {"INPUT", "OUTPUT", "FORWARD"}]
            for name, rules in self.chains.items():
                lines += [f"-A {name} {rule}" for rule in rules]
            return CommandResult(stdout="\n".join(lines) + "\n", stderr="", exit_code=0)
        if op == "-N":
            if args[1] in self.chains:
                return CommandResult(stdout="", stderr="Chain already exists.", exit_code=1)
            self.chains[args[1]] = []
        elif op == "-F":
            self.chains[args[1]] = []
        elif op == "-X":
            del self.chains[args[1]]
        elif op == "-A":
            self.chains[args[1]].append(" ".join(args[2:]))
        elif op == "-I":
            self.chains[args[1]].insert(int(args[2]) - 1, " ".join(args[3:]))
        elif op == "-D":
            self.chains[args[1]].remove(" ".join(args[2:]))
        elif op == "-E":
            old, new = args[1], args[2]
            self.chains[new] = self.chains.pop(old)
            for name, rules in self.chains.items():
                self.chains[name] = [rule.replace(f"-j {old}", f"-j {new}") for rule in rules]
        return CommandResult(stdout="", stderr="", exit_code=0)


def effective_sshd(config_path: Path) -> str:
    """Emulate ``sshd -T``: the first global value of each keyword wins."""

    values: Dict[str, str] = {}
    for line in config_path.read_text(encoding="utf-8").splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        key, _, value = stripped.partition(" ")
        if key.lower() == "match":
            break
        values.setdefault(key.lower(), value.strip())
    return "\n".join(f"{key} {value}" for key, value in values.items()) + "\n"


@pytest.fixture(autouse=True)
def logging_manager(tmp_path):
    return setup_logging(tmp_path / "logs")


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def fake_ufw(runner) -> FakeUfw:
    ufw = FakeUfw()
    runner.on("ufw", handler=ufw)
    return ufw


@pytest.fixture
def fake_iptables(runner) -> Dict[str, FakeIptables]:
    tables = {"iptables": FakeIptables(), "ip6tables": FakeIptables()}
    for binary, table in tables.items():
        runner.on(binary, handler=table)
    return tables


@pytest.fixture
def fake_sshd(runner, settings):
    """``sshd -t`` accepts the file; ``sshd -T`` reports its effective values."""

    runner.on("sshd", "-t")
    runner.on("sshd", "-T", handler=lambda argv: CommandResult(
        stdout=effective_sshd(Path(argv[-1])), stderr="", exit_code=0
    ))
    return runner


@pytest.fixture
def settings(tmp_path) -> Settings:
    etc = tmp_path / "etc"
    sshd_config = etc / "ssh" / "sshd_config"
    sshd_config.parent.mkdir(parents=True)
    sshd_config.write_text(SSHD_CONFIG, encoding="utf-8")

    home = tmp_path / "home" / "alice"
    (home / ".ssh").mkdir(parents=True)
    passwd = etc / "passwd"
    passwd.write_text(
        "root:x:0:0:root:/root:/bin/bash\n"
        f"alice:x:1000:1000:Alice:{home}:/bin/bash\n"
        "sshd:x:110:65534::/run/sshd:/usr/sbin/nologin\n",
        encoding="utf-8",
    )

    return Settings(
        sshd_config=sshd_config,
        jail_path=etc / "fail2ban" / "jail.d" / "devguard-sshd.local",
        passwd_path=passwd,
        state_dir=tmp_path / "state",
        connectivity_timeout=0.5,
    )


@pytest.fixture
def authorized_key(tmp_path) -> Path:
    path = tmp_path / "home" / "alice" / ".ssh" / "authorized_keys"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(PUBLIC_KEY, encoding="utf-8")
    return path


@pytest.fixture
def checkpoints(settings) -> CheckpointManager:
    return CheckpointManager(settings.state_dir)


@pytest.fixture
def gate(logging_manager) -> PlanGate:
    return PlanGate(GateMode.APPLY, logging_manager=logging_manager)


@pytest.fixture
def dry_gate(logging_manager) -> PlanGate:
    return PlanGate(GateMode.DRY_RUN, logging_manager=logging_manager)


@pytest.fixture
def wg_config(tmp_path) -> Path:
    path = tmp_path / "wg0.conf"
    path.write_text(
        "[Interface]\n"
        "PrivateKey = yAnz5TF+lXXJte14tji3zlMNq+hd2rYUIgJBgB3fBmk=\n"
        "Address = 10.66.0.2/32\n"
        "DNS = 10.66.0.1\n"
        "\n"
        "[Peer]\n"
        "PublicKey = xTIBA5rboUvnH4htodjb6e697QjLERt1NAB4mZqp8Dg=\n"
        "AllowedIPs = 0.0.0.0/0, ::/0\n"
        "Endpoint = 203.0.113.9:51820\n"
        "PersistentKeepalive = 25\n",
        encoding="utf-8",
    )
    return path
