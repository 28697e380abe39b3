import json

import pytest

from relaybridge.proxy.credentials import CredentialSource
from relaybridge.proxy.errors import CredentialError, CredentialNotFound


def _memory_source(indices=(1, 3, 5)):
    return CredentialSource(permanent={i: {"account": i} for i in indices})


def test_next_after_wraps_round_robin():
    source = _memory_source()

    assert source.next_after(1) == 3
    assert source.next_after(3) == 5
    assert source.next_after(5) == 1
    assert source.next_after(None) == 1
    assert source.next_after(4) == 1


def test_next_after_without_credentials():
    source = CredentialSource(permanent={}, require_any=False)

    assert source.next_after(None) is None
    assert source.first_available() is None


def test_construction_requires_a_credential(tmp_path):
    with pytest.raises(CredentialError):
        CredentialSource(tmp_path / "empty", environ={})


def test_transient_accounts():
    source = _memory_source()

    with pytest.raises(CredentialError):
        source.add_transient(3, {"x": 1})
    with pytest.raises(CredentialError):
        source.add_transient(0, {"x": 1})
    with pytest.raises(CredentialError):
        source.add_transient(7, ["not", "an", "object"])

    source.add_transient(7, {"account": 7})
    assert source.available_indices() == [1, 3, 5, 7]
    assert source.next_after(5) == 7
    assert source.get_payload(7) == {"account": 7}
    assert {"index": 7, "source": "temporary"} in source.account_details()

    source.remove_transient(7)
    assert source.available_indices() == [1, 3, 5]
    with pytest.raises(CredentialNotFound):
        source.remove_transient(7)
    with pytest.raises(CredentialNotFound):
        source.remove_transient(1)


def test_get_payload_unknown_index():
    with pytest.raises(CredentialNotFound):
        _memory_source().get_payload(2)


def test_file_mode_discovers_numbered_files(tmp_path):
    auth_dir = tmp_path / "auth"
    auth_dir.mkdir()
    (auth_dir / "auth-2.json").write_text(json.dumps({"cookies": []}))
    (auth_dir / "auth-10.json").write_text(json.dumps({"cookies": [1]}))
    (auth_dir / "auth-4.json").write_text("{broken")
    (auth_dir / "notes.txt").write_text("ignored")

    source = CredentialSource(auth_dir, environ={})

    assert source.mode == "file"
    assert source.available_indices() == [2, 4, 10]
    assert source.get_payload(10) == {"cookies": [1]}
    with pytest.raises(CredentialNotFound):
        source.get_payload(4)


def test_env_mode_takes_precedence(tmp_path):
    environ = {
        "AUTH_JSON_1": json.dumps({"account": 1}),
        "AUTH_JSON_3": json.dumps({"account": 3}),
        "AUTH_JSON_X": "{}",
    }

    source = CredentialSource(tmp_path, environ=environ)

    assert source.mode == "env"
    assert source.available_indices() == [1, 3]
    assert source.get_payload(3) == {"account": 3}
    assert source.account_details() == [
        {"index": 1, "source": "env"},
        {"index": 3, "source": "env"},
    ]
