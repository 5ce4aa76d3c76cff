"""Tests for structure image creation."""

import os
import pytest
from ubuntu_image.lib.utils import MiB
from ubuntu_image.lib.config import ConfigError
from ubuntu_image.gadget.structure import Structure, StructureContent
from ubuntu_image.disk.filesystem import create_filesystem, create_raw_image, create_sparse, has_content


def fs_structure(filesystem: str, label: str = "") -> Structure:
	s = Structure()
	s.type = "83"
	s.size = 4 * MiB
	s.filesystem = filesystem
	s.label = label
	return s


# ── Filesystems ─────────────────────────────────────────────────────


def test_create_sparse(tmp_path) -> None:
	path = str(tmp_path / "img")
	create_sparse(path, 3 * MiB)
	assert os.path.getsize(path) == 3 * MiB
	create_sparse(path, MiB)
	assert os.path.getsize(path) == MiB


def test_ext4_with_content(ctx, recorder, tmp_path) -> None:
	content = tmp_path / "content"
	content.mkdir()
	(content / "file").write_text("hi")
	output = str(tmp_path / "part.img")
	create_filesystem(ctx, fs_structure("ext4", "writable"), str(content), output, 4 * MiB)
	assert os.path.getsize(output) == 4 * MiB
	assert recorder.commands == [
		["mkfs.ext4", "-F", "-q", "-L", "writable", "-d", str(content), output],
	]
	assert recorder.kwargs[0]["env"]["MKE2FS_DEVICE_SECTSIZE"] == "512"


def test_ext4_empty_content(ctx, recorder, tmp_path) -> None:
	content = tmp_path / "content"
	content.mkdir()
	output = str(tmp_path / "part.img")
	create_filesystem(ctx, fs_structure("ext4"), str(content), output, 4 * MiB)
	assert recorder.commands == [["mkfs.ext4", "-F", "-q", output]]


def test_vfat_copies_content(ctx, recorder, tmp_path) -> None:
	ctx.common.sector_size = 4096
	content = tmp_path / "content"
	(content / "EFI").mkdir(parents=True)
	(content / "grub.cfg").write_text("")
	output = str(tmp_path / "part.img")
	create_filesystem(ctx, fs_structure("vfat", "system-boot"), str(content), output, 4 * MiB)
	assert recorder.commands == [
		["mkfs.vfat", "-F", "32", "-s", "1", "-n", "system-boot", "-S", "4096", output],
		["mcopy", "-s", "-i", output, str(content / "EFI"), str(content / "grub.cfg"), "::"],
	]


def test_vfat_16(ctx, recorder, tmp_path) -> None:
	output = str(tmp_path / "part.img")
	create_filesystem(ctx, fs_structure("vfat-16"), str(tmp_path / "none"), output, 4 * MiB)
	assert recorder.commands[0][:3] == ["mkfs.vfat", "-F", "16"]
	assert recorder.programs() == ["mkfs.vfat"]


def test_unsupported_filesystem(ctx, recorder, tmp_path) -> None:
	with pytest.raises(ConfigError):
		create_filesystem(ctx, fs_structure("btrfs"), "", str(tmp_path / "part.img"), MiB)
	assert recorder.commands == []


def test_mkfs_failure(ctx, recorder, tmp_path) -> None:
	recorder.returns["mkfs.ext4"] = 1
	with pytest.raises(OSError):
		create_filesystem(ctx, fs_structure("ext4"), "", str(tmp_path / "part.img"), MiB)


def test_has_content(tmp_path) -> None:
	assert not has_content(str(tmp_path / "missing"))
	assert not has_content(str(tmp_path))
	(tmp_path / "x").write_text("")
	assert has_content(str(tmp_path))


# ── Raw structures ──────────────────────────────────────────────────


def raw_structure(*contents: StructureContent) -> Structure:
	s = Structure()
	s.name = "raw"
	s.type = "bare"
	s.size = 4096
	s.content = list(contents)
	return s


def test_raw_image_offsets(tmp_path) -> None:
	gadget = tmp_path / "gadget"
	gadget.mkdir()
	(gadget / "a.bin").write_bytes(b"AAAA")
	(gadget / "b.bin").write_bytes(b"BBBBBBBB")
	output = str(tmp_path / "raw.img")
	s = raw_structure(
		StructureContent({"image": "a.bin"}),
		StructureContent({"image": "b.bin", "offset": 100, "size": 4}),
		StructureContent({"image": "a.bin"}),
	)
	create_raw_image(s, str(gadget), output, 4096)
	with open(output, "rb") as f:
		data = f.read()
	assert len(data) == 4096
	assert data[0:4] == b"AAAA"
	assert data[100:108] == b"BBBBAAAA"


def test_raw_image_overflow(tmp_path) -> None:
	gadget = tmp_path / "gadget"
	gadget.mkdir()
	(gadget / "big.bin").write_bytes(b"x" * 5000)
	s = raw_structure(StructureContent({"image": "big.bin"}))
	with pytest.raises(ConfigError, match="does not fit"):
		create_raw_image(s, str(gadget), str(tmp_path / "raw.img"), 4096)
