"""Tests for partition table synthesis from gadget volumes."""

import pytest
from ubuntu_image.lib.utils import MiB
from ubuntu_image.gadget.structure import Volume, Structure, SCHEMA_GPT, SCHEMA_MBR
from ubuntu_image.disk.layout.table import (
	GeometryOverlapError, PartitionTable,
	gpt_entries_sectors, gpt_primary_sectors, gpt_secondary_sectors,
	new_table_builder, partition_numbers, synthesize,
)

LINUX = "83,0FC63DAF-8483-4772-8E79-3D69D8477DE4"
BIOS = "DA,21686148-6449-6E6F-744E-656564454649"
ESP = "EF,C12A7328-F81F-11D2-BA4B-00A0C93EC93B"


def structure(name: str = "", offset: int = None, size: int = MiB, type: str = LINUX, role: str = "", label: str = "") -> Structure:
	s = Structure()
	s.name = name
	s.offset = offset
	s.size = size
	s.type = type
	s.role = role
	s.label = label
	return s


def volume(*structures: Structure, schema: str = SCHEMA_GPT) -> Volume:
	v = Volume()
	v.name = "pc"
	v.schema = schema
	v.structures = list(structures)
	return v


# ── Table geometry ──────────────────────────────────────────────────


def test_gpt_sector_counts() -> None:
	assert gpt_entries_sectors(512) == 32
	assert gpt_entries_sectors(4096) == 4
	assert gpt_primary_sectors(512) == 34
	assert gpt_secondary_sectors(512) == 33
	assert gpt_primary_sectors(4096) == 6
	assert gpt_secondary_sectors(4096) == 5


def test_table_size() -> None:
	v = volume(structure("a", offset=MiB))
	assert synthesize(v, 512, 8 * MiB)[0].table_size() == (34 + 33) * 512
	v.schema = SCHEMA_MBR
	assert synthesize(v, 512, 8 * MiB)[0].table_size() == 512


def test_unknown_schema() -> None:
	with pytest.raises(ValueError):
		new_table_builder("emmc", 512, 8 * MiB)


# ── GPT synthesis ───────────────────────────────────────────────────


def test_gpt_512_sectors() -> None:
	v = volume(structure("data", offset=MiB, size=4 * MiB))
	table, rootfs = synthesize(v, 512, 8 * MiB)
	assert table.schema == SCHEMA_GPT
	assert table.protective_mbr
	assert table.disk_sectors == 16384
	assert len(table.partitions) == 1
	part = table.partitions[0]
	assert part.start_sector == 2048
	assert part.size_sectors == 8192
	assert part.end_sector == 2048 + 8192 - 1
	assert part.name == "data"
	assert part.type_code == "0FC63DAF-8483-4772-8E79-3D69D8477DE4"
	assert rootfs == -1


def test_gpt_4096_sectors() -> None:
	v = volume(structure("data", offset=MiB, size=4 * MiB))
	table, _ = synthesize(v, 4096, 8 * MiB)
	assert table.disk_sectors == 2048
	assert table.partitions[0].start_sector == 256
	assert table.partitions[0].size_sectors == 1024


def test_gpt_overlaps_primary_table() -> None:
	v = volume(structure("early", offset=0))
	with pytest.raises(GeometryOverlapError) as e:
		synthesize(v, 512, 8 * MiB)
	assert e.value.structure == "early"
	assert "early" in str(e.value)


def test_gpt_overlaps_primary_table_4096() -> None:
	v = volume(structure("early", offset=1))
	with pytest.raises(GeometryOverlapError):
		synthesize(v, 4096, 8 * MiB)


def test_gpt_overlaps_backup_table() -> None:
	v = volume(structure("late", offset=9 * MiB, size=MiB))
	with pytest.raises(GeometryOverlapError):
		synthesize(v, 512, 10 * MiB)


def test_gpt_fits_before_backup_table() -> None:
	# 20480 sectors, the backup table takes the last 33
	v = volume(structure("late", offset=9 * MiB, size=MiB - 33 * 512))
	table, _ = synthesize(v, 512, 10 * MiB)
	assert table.partitions[0].end_sector == 20480 - 33 - 1


def test_gpt_overlap_names_unnamed_structure() -> None:
	v = volume(structure(label="boot", offset=0))
	with pytest.raises(GeometryOverlapError) as e:
		synthesize(v, 512, 8 * MiB)
	assert e.value.structure == "boot"


def test_gpt_rootfs_default_name() -> None:
	v = volume(
		structure("boot", offset=MiB, type=ESP, role="system-boot"),
		structure(offset=2 * MiB, role="system-data"),
	)
	table, rootfs = synthesize(v, 512, 8 * MiB)
	assert rootfs == 2
	assert table.partitions[1].name == "writable"


def test_hybrid_type_per_schema() -> None:
	s = structure("bios", offset=MiB, type=BIOS)
	table, _ = synthesize(volume(s), 512, 8 * MiB)
	assert table.partitions[0].type_code == "21686148-6449-6E6F-744E-656564454649"
	table, _ = synthesize(volume(s, schema=SCHEMA_MBR), 512, 8 * MiB)
	assert table.partitions[0].type_code == "DA"


def test_synthesize_is_repeatable() -> None:
	v = volume(
		structure("a", offset=MiB),
		structure("b", offset=3 * MiB, role="system-data"),
	)
	first = synthesize(v, 512, 8 * MiB)
	second = synthesize(v, 512, 8 * MiB)
	assert first[0] == second[0]
	assert first[1] == second[1]


# ── Partition numbering ─────────────────────────────────────────────


def test_partition_numbers_skip_non_partitions() -> None:
	v = volume(
		structure("mbr", offset=0, size=440, type="mbr", role="mbr"),
		structure("blob", offset=MiB // 2, size=1024, type="bare"),
		structure("boot", offset=MiB, type=ESP),
		structure("data", offset=2 * MiB, role="system-data"),
	)
	assert partition_numbers(v) == {2: 1, 3: 2}
	table, rootfs = synthesize(v, 512, 8 * MiB)
	assert [p.name for p in table.partitions] == ["boot", "data"]
	assert rootfs == 2


def test_seeded_build_skips_installer_partitions() -> None:
	v = volume(
		structure("ubuntu-seed", offset=MiB, role="system-seed"),
		structure("ubuntu-boot", offset=2 * MiB, role="system-boot"),
		structure("ubuntu-save", offset=3 * MiB, role="system-save"),
		structure("ubuntu-data", offset=4 * MiB, role="system-data"),
	)
	table, rootfs = synthesize(v, 512, 8 * MiB, seeded=True)
	assert [p.name for p in table.partitions] == ["ubuntu-seed"]
	assert rootfs == -1
	table, rootfs = synthesize(v, 512, 8 * MiB, seeded=False)
	assert len(table.partitions) == 4
	assert rootfs == 4


def test_seeded_build_skips_system_boot_label() -> None:
	v = volume(
		structure("seed", offset=MiB, role="system-seed"),
		structure("boot", offset=2 * MiB, label="system-boot"),
	)
	assert partition_numbers(v, seeded=True) == {0: 1}


# ── MBR synthesis ───────────────────────────────────────────────────


def test_mbr_table() -> None:
	v = volume(
		structure("boot", offset=MiB, type=ESP, role="system-boot"),
		structure("data", offset=2 * MiB, size=2 * MiB, role="system-data"),
		schema=SCHEMA_MBR,
	)
	table, rootfs = synthesize(v, 512, 8 * MiB)
	assert table.schema == SCHEMA_MBR
	assert not table.protective_mbr
	assert table.table_size() == 512
	assert [p.start_sector for p in table.partitions] == [2048, 4096]
	assert [p.type_code for p in table.partitions] == ["EF", "83"]
	assert table.partitions[0].bootable
	assert not table.partitions[1].bootable
	assert rootfs == 2


def test_mbr_does_not_check_gpt_overlap() -> None:
	v = volume(structure("early", offset=512), schema=SCHEMA_MBR)
	table, _ = synthesize(v, 512, 8 * MiB)
	assert table.partitions[0].start_sector == 1


# ── Persistence ─────────────────────────────────────────────────────


def test_table_from_dict() -> None:
	v = volume(structure("data", offset=MiB))
	table, _ = synthesize(v, 512, 8 * MiB)
	loaded = PartitionTable(table.to_dict())
	assert loaded.partitions[0].start_sector == 2048
	assert loaded.partitions[0].name == "data"
	assert loaded == table
