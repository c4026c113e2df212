from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from devguard.core.config import IntentLoadError, Settings, load_intent


def test_defaults_point_at_system_locations() -> None:
    settings = Settings()

    assert settings.sshd_config == Path("/etc/ssh/sshd_config")
    assert settings.supported_os == ["debian", "ubuntu"]


def test_from_env_overrides_locations() -> None:
    settings = Settings.from_env({
        "DEVGUARD_SSHD_CONFIG": "/tmp/sshd_config",
        "DEVGUARD_SSH_SERVICE": "sshd",
        "DEVGUARD_CONNECTIVITY_TIMEOUT": "2.5",
        "DEVGUARD_AUTHORIZED_KEYS": os.pathsep.join(["/a/keys", "/b/keys"]),
    })

    assert settings.sshd_config == Path("/tmp/sshd_config")
    assert settings.ssh_service == "sshd"
    assert settings.connectivity_timeout == 2.5
    assert settings.authorized_keys_paths == [Path("/a/keys"), Path("/b/keys")]


def test_load_intent_defaults() -> None:
    intent = load_intent()

    assert intent.management_port == 22
    assert intent.disable_password_auth
    assert not intent.killswitch_requested
    assert intent.ban.max_retry == 5


def test_overrides_win_over_file_and_none_is_ignored(tmp_path) -> None:
    path = tmp_path / "intent.json"
    path.write_text(json.dumps({"management_port": 2222, "ban": {"max_retry": 3, "ban_time": 60}}), encoding="utf-8")

    intent = load_intent(path, {"management_port": None, "allowed_user": "alice", "ban": {"max_retry": 7, "find_time": None}})

    assert intent.management_port == 2222
    assert intent.allowed_user == "alice"
    assert (intent.ban.max_retry, intent.ban.find_time, intent.ban.ban_time) == (7, 600, 60)


def test_tunnel_interface_defaults_to_config_stem(tmp_path) -> None:
    intent = load_intent(overrides={"tunnel_config": tmp_path / "wg-home.conf"})

    assert intent.killswitch_requested
    assert intent.interface_name == "wg-home"


@pytest.mark.parametrize("payload", [
    {"management_port": 0},
    {"management_port": 70000},
    {"allowed_user": "alice; rm -rf /"},
    {"tunnel_interface": "wg0 -j ACCEPT"},
    {"unknown_field": True},
])
def test_invalid_intent_is_rejected(payload) -> None:
    with pytest.raises(IntentLoadError):
        load_intent(overrides=payload)


def test_unreadable_or_malformed_file(tmp_path) -> None:
    with pytest.raises(IntentLoadError):
        load_intent(tmp_path / "missing.json")

    broken = tmp_path / "broken.json"
    broken.write_text("{not json", encoding="utf-8")
    with pytest.raises(IntentLoadError):
        load_intent(broken)

    listing = tmp_path / "list.json"
    listing.write_text("[1, 2]", encoding="utf-8")
    with pytest.raises(IntentLoadError):
        load_intent(listing)
