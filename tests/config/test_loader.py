from pathlib import Path
import textwrap

import pytest

from kubestrap.bootstrap.errors import InventoryError
from kubestrap.bootstrap.models import Role
from kubestrap.config.loader import load_inventory


def _write(tmp_path: Path, text: str) -> Path:
    f = tmp_path / "inventory.yaml"
    f.write_text(textwrap.dedent(text))
    return f


def test_load_bare_host_list(tmp_path: Path):
    inv = load_inventory(_write(tmp_path, """
        - {address: 10.0.0.10, role: control-plane, name: cp1}
        - {address: 10.0.0.11, role: worker}
    """))
    cps = inv.hosts_for(Role.CONTROL_PLANE)
    workers = inv.hosts_for(Role.WORKER)
    assert [h.name for h in cps] == ["cp1"]
    assert workers[0].name == "10.0.0.11"
    assert workers[0].username == "ubuntu"
    assert workers[0].port == 22
    assert inv.settings.cluster_name == "kubernetes"


def test_load_mapping_with_settings_and_env(tmp_path: Path, monkeypatch):
    monkeypatch.setenv("KUBESTRAP_KEY", "/keys/id_ed25519")
    inv = load_inventory(_write(tmp_path, """
        settings:
          cluster_name: lab
          ssh_username: admin
          ssh_key: ${KUBESTRAP_KEY}
          concurrency: 4
          retry:
            attempts: 5
        hosts:
          - address: 10.0.0.10
            role: control-plane
            name: cp1
          - address: 10.0.0.11
            role: worker
            name: w1
            username: root
            port: 2222
    """))
    cp, w1 = inv.all_hosts()
    assert inv.settings.cluster_name == "lab"
    assert inv.settings.concurrency == 4
    assert inv.settings.retry.attempts == 5
    assert cp.username == "admin"
    assert str(cp.pkey_path) == "/keys/id_ed25519"
    assert w1.username == "root"
    assert w1.port == 2222
    assert inv.settings.state_path().name == "lab.json"


def test_inventory_needs_a_control_plane(tmp_path: Path):
    with pytest.raises(InventoryError) as exc:
        load_inventory(_write(tmp_path, """
            - {address: 10.0.0.11, role: worker}
        """))
    assert "control-plane" in str(exc.value)


def test_duplicate_host_names_are_rejected(tmp_path: Path):
    with pytest.raises(InventoryError):
        load_inventory(_write(tmp_path, """
            - {address: 10.0.0.10, role: control-plane, name: node}
            - {address: 10.0.0.11, role: worker, name: node}
        """))


def test_unknown_role_is_rejected(tmp_path: Path):
    with pytest.raises(InventoryError):
        load_inventory(_write(tmp_path, """
            - {address: 10.0.0.10, role: etcd}
        """))


def test_invalid_yaml_and_missing_file(tmp_path: Path):
    with pytest.raises(InventoryError):
        load_inventory(_write(tmp_path, "hosts: [unclosed"))
    with pytest.raises(InventoryError):
        load_inventory(tmp_path / "nope.yaml")
    with pytest.raises(InventoryError):
        load_inventory(_write(tmp_path, "just a string"))


def test_password_is_not_in_repr(tmp_path: Path):
    inv = load_inventory(_write(tmp_path, """
        - {address: 10.0.0.10, role: control-plane, password: hunter2}
    """))
    assert "hunter2" not in repr(inv)
    assert "hunter2" not in repr(inv.all_hosts()[0])
