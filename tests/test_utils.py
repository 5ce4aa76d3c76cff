"""Tests for small shared helpers."""

import os
import pytest
from ubuntu_image.lib.cpu import cpu_arch_compatible, cpu_arch_name_map
from ubuntu_image.lib.config import ConfigError, load_config_file
from ubuntu_image.lib.utils import (
	bytes_pad, ceil_div, copy_tree, disk_usage, parse_cmd_args, round_up, size_to_bytes,
)

# ── Sizes ───────────────────────────────────────────────────────────


@pytest.mark.parametrize("value, expected", [
	("1M", 1 << 20),
	("4K", 4096),
	("2G", 2 << 30),
	("1MiB", 1 << 20),
	("0x1000", 4096),
	("512", 512),
	(123, 123),
])
def test_size_to_bytes(value, expected) -> None:
	assert size_to_bytes(value) == expected


@pytest.mark.parametrize("value", ["", "M", "1.5M", "abc", -1])
def test_size_to_bytes_invalid(value) -> None:
	with pytest.raises(ValueError):
		size_to_bytes(value)


def test_ceil_div() -> None:
	assert ceil_div(1 << 20, 512) == 2048
	assert ceil_div(1, 4096) == 1
	assert ceil_div(0, 512) == 0


def test_round_up() -> None:
	assert round_up(0x2000, 0x1000) == 0x2000
	assert round_up(0x2001, 0x1000) == 0x3000


def test_bytes_pad() -> None:
	assert bytes_pad(b"ab", 4) == b"ab\0\0"
	assert bytes_pad(b"abcdef", 4) == b"abcdef"
	assert bytes_pad(b"abcdef", 4, trunc=True) == b"abcd"


def test_parse_cmd_args() -> None:
	assert parse_cmd_args("ls -la '/mnt dir'") == ["ls", "-la", "/mnt dir"]
	assert parse_cmd_args(["ls"]) == ["ls"]
	with pytest.raises(TypeError):
		parse_cmd_args(None)


def test_cpu_arch_name_map() -> None:
	assert cpu_arch_name_map("x86_64") == "amd64"
	assert cpu_arch_name_map("aarch64") == "arm64"
	assert cpu_arch_name_map("ARMv7l") == "armhf"
	assert cpu_arch_name_map("ppc64le") == "ppc64el"


def test_cpu_arch_compatible() -> None:
	assert cpu_arch_compatible("amd64", "x86_64")
	assert cpu_arch_compatible("i386", "x86_64")
	assert cpu_arch_compatible("armhf", "aarch64")
	assert not cpu_arch_compatible("arm64", "x86_64")
	assert not cpu_arch_compatible("amd64", "aarch64")


# ── Files ───────────────────────────────────────────────────────────


def test_disk_usage_counts_hard_links_once(tmp_path) -> None:
	(tmp_path / "a").write_bytes(b"x" * 1000)
	os.link(tmp_path / "a", tmp_path / "b")
	(tmp_path / "sub").mkdir()
	(tmp_path / "sub" / "c").write_bytes(b"y" * 24)
	size = disk_usage(str(tmp_path))
	assert size == 1000 + 24 + os.lstat(tmp_path / "sub").st_size


def test_copy_tree_keeps_symlinks(tmp_path) -> None:
	src = tmp_path / "src"
	src.mkdir()
	(src / "file").write_text("data")
	os.symlink("/nonexistent", src / "link")
	dst = tmp_path / "dst"
	dst.mkdir()
	copy_tree(str(src), str(dst))
	assert (dst / "file").read_text() == "data"
	assert os.readlink(dst / "link") == "/nonexistent"


def test_load_config_yaml_and_json(tmp_path) -> None:
	(tmp_path / "a.yaml").write_text("name: test\nlist: [1, 2]\n")
	(tmp_path / "b.json").write_text('{"name": "test"}')
	(tmp_path / "empty.yaml").write_text("")
	assert load_config_file(str(tmp_path / "a.yaml")) == {"name": "test", "list": [1, 2]}
	assert load_config_file(str(tmp_path / "b.json")) == {"name": "test"}
	assert load_config_file(str(tmp_path / "empty.yaml")) == {}


def test_load_config_errors(tmp_path) -> None:
	(tmp_path / "bad.yaml").write_text("a: [")
	(tmp_path / "list.yaml").write_text("- a\n")
	for name in ["missing.yaml", "bad.yaml", "list.yaml"]:
		with pytest.raises(ConfigError):
			load_config_file(str(tmp_path / name))
