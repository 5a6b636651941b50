import io
import os
import stat

import pytest
import yaml

from hpc_audit import clush_config
from hpc_audit.clush_config import (
    ClushConfigError,
    default_output_path,
    generate,
    is_valid_ipv4,
    read_ip_list,
    render_groups_yaml,
)


def test_ipv4_validation() -> None:
    assert is_valid_ipv4("10.0.0.1")
    assert is_valid_ipv4("255.255.255.255")
    assert not is_valid_ipv4("256.1.1.1")
    assert not is_valid_ipv4("10.0.0")
    assert not is_valid_ipv4("node01")
    assert not is_valid_ipv4(" 10.0.0.1")


def test_non_ascii_digits_are_not_ipv4() -> None:
    assert not is_valid_ipv4("\u0661\u0660.0.0.1")
    assert read_ip_list(["\u0661\u0660.0.0.1\n", "10.0.0.1\n"]) == ["10.0.0.1"]


def test_read_ip_list_skips_comments_invalid_and_duplicates() -> None:
    lines = [
        "# compute nodes\n",
        "10.0.0.1\n",
        "\n",
        "10.0.0.2   # rack 2\n",
        "10.0.0.1\n",
        "999.0.0.1\n",
        "10.0.0.3\r\n",
    ]
    assert read_ip_list(lines) == ["10.0.0.1", "10.0.0.2", "10.0.0.3"]


def test_rendered_yaml_keeps_order() -> None:
    content = render_groups_yaml("gpu", ["10.0.0.2", "10.0.0.1"])
    assert content == "gpu:\n- 10.0.0.2\n- 10.0.0.1\n"
    assert yaml.safe_load(content) == {"gpu": ["10.0.0.2", "10.0.0.1"]}


def test_default_output_path_uses_xdg_config_home(monkeypatch, tmp_path) -> None:
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path))
    assert default_output_path("gpu") == str(tmp_path / "clustershell" / "groups.d" / "gpu.yaml")


def test_generate_writes_world_readable_file(tmp_path) -> None:
    ips = tmp_path / "clusterip.txt"
    ips.write_text("10.0.0.1\n10.0.0.2\n")
    out = tmp_path / "conf" / "groups.d" / "cluster.yaml"

    path, members = generate(str(ips), output_path=str(out))
    assert path == str(out)
    assert members == ["10.0.0.1", "10.0.0.2"]
    assert yaml.safe_load(out.read_text()) == {"cluster": ["10.0.0.1", "10.0.0.2"]}
    assert stat.S_IMODE(os.stat(out).st_mode) == 0o644
    assert [p.name for p in out.parent.iterdir()] == ["cluster.yaml"]


def test_dry_run_prints_and_writes_nothing(tmp_path) -> None:
    ips = tmp_path / "clusterip.txt"
    ips.write_text("10.0.0.7\n")
    stdout = io.StringIO()
    path, _ = generate(str(ips), group="login", output_path=str(tmp_path / "x.yaml"),
                       dry_run=True, stdout=stdout)
    assert path is None
    assert stdout.getvalue() == "login:\n- 10.0.0.7\n"
    assert not (tmp_path / "x.yaml").exists()


def test_missing_input_and_empty_list(tmp_path) -> None:
    with pytest.raises(ClushConfigError):
        generate(str(tmp_path / "nope.txt"))
    empty = tmp_path / "empty.txt"
    empty.write_text("# nothing\nnot-an-ip\n")
    with pytest.raises(ClushConfigError):
        generate(str(empty))


def test_main_exit_codes(tmp_path) -> None:
    assert clush_config.main(["-i", str(tmp_path / "missing.txt")]) == 1
    ips = tmp_path / "clusterip.txt"
    ips.write_text("10.1.1.1\n")
    out = tmp_path / "g.yaml"
    assert clush_config.main(["-i", str(ips), "-g", "edge", "-o", str(out)]) == 0
    assert out.read_text() == "edge:\n- 10.1.1.1\n"
