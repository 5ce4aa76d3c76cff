from typing import Self
from logging import getLogger
from ubuntu_image.lib.utils import ceil_div
from ubuntu_image.lib.serializable import SerializableDict
from ubuntu_image.gadget.structure import Volume, Structure, SCHEMA_GPT, SCHEMA_MBR
log = getLogger(__name__)


PROTECTIVE_MBR_SECTORS = 1
PARTITION_HEADER_SECTORS = 1

# the GPT entries array is 128 entries of 128 bytes whatever the sector size
GPT_ENTRIES_COUNT = 128
GPT_ENTRY_SIZE = 128
GPT_ENTRIES_BYTES = GPT_ENTRIES_COUNT * GPT_ENTRY_SIZE


class GeometryOverlapError(ValueError):
	"""
	A structure collides with the space reserved for GPT headers or entries
	"""
	structure: str

	def __init__(self, structure: str):
		self.structure = structure
		super().__init__(
			f"The structure \"{structure}\" overlaps GPT header or "
			"GPT partition table"
		)


def gpt_entries_sectors(sector: int) -> int:
	"""
	gpt_entries_sectors(512) = 32
	gpt_entries_sectors(4096) = 4
	"""
	return ceil_div(GPT_ENTRIES_BYTES, sector)


def gpt_primary_sectors(sector: int) -> int:
	return PROTECTIVE_MBR_SECTORS + PARTITION_HEADER_SECTORS + gpt_entries_sectors(sector)


def gpt_secondary_sectors(sector: int) -> int:
	return PARTITION_HEADER_SECTORS + gpt_entries_sectors(sector)


class PartitionEntry(SerializableDict):
	start_sector: int
	size_sectors: int
	type_code: str

	"""
	GPT only
	"""
	name: str

	"""
	MBR only
	"""
	bootable: bool

	@property
	def end_sector(self) -> int:
		return self.start_sector + self.size_sectors - 1

	def __init__(self, o: dict = None):
		self.start_sector = 0
		self.size_sectors = 0
		self.type_code = ""
		self.name = ""
		self.bootable = False
		super().__init__(o)


class PartitionTable(SerializableDict):
	schema: str
	sector_size: int
	disk_sectors: int
	protective_mbr: bool
	partitions: list[PartitionEntry]

	def table_size(self) -> int:
		"""
		Bytes reserved on disk by the table itself
		"""
		if self.schema == SCHEMA_GPT:
			sectors = gpt_primary_sectors(self.sector_size)
			sectors += gpt_secondary_sectors(self.sector_size)
			return sectors * self.sector_size
		return self.sector_size

	def from_dict(self, o: dict) -> Self:
		super().from_dict(o)
		self.partitions = [
			p if isinstance(p, PartitionEntry) else PartitionEntry(p)
			for p in self.partitions
		]
		return self

	def __init__(self, o: dict = None):
		self.schema = SCHEMA_GPT
		self.sector_size = 512
		self.disk_sectors = 0
		self.protective_mbr = False
		self.partitions = []
		super().__init__(o)


class TableBuilder:
	"""
	Schema specific part of partition table synthesis
	"""
	schema: str
	table: PartitionTable

	def size_to_sectors(self, size: int) -> int:
		return ceil_div(size, self.table.sector_size)

	def add_partition(self, structure: Structure, idx: int, start: int, ptype: str) -> PartitionEntry:
		raise NotImplementedError()

	def __init__(self, sector: int, image_size: int):
		if sector <= 0: raise ValueError(f"bad sector size {sector}")
		self.table = PartitionTable()
		self.table.schema = self.schema
		self.table.sector_size = sector
		self.table.disk_sectors = ceil_div(image_size, sector)


class MBRTableBuilder(TableBuilder):
	schema = SCHEMA_MBR

	def add_partition(self, structure: Structure, idx: int, start: int, ptype: str) -> PartitionEntry:
		entry = PartitionEntry()
		entry.start_sector = self.size_to_sectors(start)
		entry.size_sectors = self.size_to_sectors(structure.real_size)
		entry.type_code = ptype
		entry.bootable = structure.is_system_boot()
		return entry


class GPTTableBuilder(TableBuilder):
	schema = SCHEMA_GPT

	def overlaps_table(self, start_sector: int, size_sectors: int) -> bool:
		sector = self.table.sector_size
		if start_sector < gpt_primary_sectors(sector): return True
		end = self.table.disk_sectors - gpt_secondary_sectors(sector)
		return start_sector + size_sectors > end

	def add_partition(self, structure: Structure, idx: int, start: int, ptype: str) -> PartitionEntry:
		entry = PartitionEntry()
		entry.start_sector = self.size_to_sectors(start)
		entry.size_sectors = self.size_to_sectors(structure.real_size)
		if self.overlaps_table(entry.start_sector, entry.size_sectors):
			raise GeometryOverlapError(structure.display_name(idx))
		entry.type_code = ptype
		entry.name = structure.name
		if structure.is_rootfs() and not entry.name:
			entry.name = "writable"
		return entry

	def __init__(self, sector: int, image_size: int):
		super().__init__(sector, image_size)
		self.table.protective_mbr = True


TABLE_BUILDERS: dict[str, type[TableBuilder]] = {
	SCHEMA_MBR: MBRTableBuilder,
	SCHEMA_GPT: GPTTableBuilder,
}


def new_table_builder(schema: str, sector: int, image_size: int) -> TableBuilder:
	if schema not in TABLE_BUILDERS:
		raise ValueError(f"unsupported partition table schema {schema}")
	return TABLE_BUILDERS[schema](sector, image_size)


def partition_numbers(volume: Volume, seeded: bool = False) -> dict[int, int]:
	"""
	Map structure index to the 1-based number of its partition table entry
	"""
	ret: dict[int, int] = {}
	for idx, structure in enumerate(volume.structures):
		if not structure.is_partition(): continue
		if structure.should_skip(seeded): continue
		ret[idx] = len(ret) + 1
	return ret


def synthesize(
	volume: Volume,
	sector: int,
	image_size: int,
	seeded: bool = False,
) -> tuple[PartitionTable, int]:
	"""
	Compute the partition table of a volume
	Returns the table and the 1-based partition number of the rootfs,
	-1 when no rootfs partition was emitted
	"""
	builder = new_table_builder(volume.schema, sector, image_size)
	offsets = volume.start_offsets()
	rootfs = -1
	for idx, number in partition_numbers(volume, seeded).items():
		structure = volume.structures[idx]
		if structure.is_rootfs(): rootfs = number
		ptype = structure.type_for(volume.schema)
		entry = builder.add_partition(structure, idx, offsets[idx], ptype)
		builder.table.partitions.append(entry)
		log.debug(
			f"volume {volume.name} partition {number} "
			f"start sector {entry.start_sector} "
			f"size {entry.size_sectors} sectors "
			f"type {entry.type_code}"
		)
	return builder.table, rootfs
