import os
from uuid import UUID, uuid4
from ctypes import sizeof
from binascii import crc32
from logging import getLogger
from ubuntu_image.lib.utils import bytes_pad, round_up
from ubuntu_image.gadget.structure import SCHEMA_GPT, SCHEMA_MBR
from ubuntu_image.disk.layout.table import (
	PartitionTable, GPT_ENTRIES_COUNT,
	gpt_entries_sectors, gpt_primary_sectors, gpt_secondary_sectors,
)
from ubuntu_image.disk.layout.mbr.struct import MasterBootRecord, MbrPartEntry
from ubuntu_image.disk.layout.gpt.struct import EfiGUID, EfiPartTableHeader, EfiPartEntry
log = getLogger(__name__)


def create_mbr(table: PartitionTable, mbr_id: int) -> MasterBootRecord:
	new_mbr = MasterBootRecord()
	new_mbr.fill_header()
	new_mbr.mbr_id = mbr_id
	if len(table.partitions) > 4:
		raise ValueError("too many primary partitions for MBR")
	for idx, part in enumerate(table.partitions):
		entry = MbrPartEntry()
		entry.set_area(part.start_sector, part.size_sectors)
		entry.set_type(part.type_code)
		entry.set_bootable(part.bootable)
		new_mbr.partitions[idx] = entry
	return new_mbr


def create_pmbr(table: PartitionTable) -> MasterBootRecord:
	new_pmbr = MasterBootRecord()
	new_pmbr.fill_header()
	ppart = MbrPartEntry()
	ppart.set_area(1, min(table.disk_sectors - 1, 0xffffffff - 1))
	ppart.set_type("gpt")
	new_pmbr.partitions[0] = ppart
	return new_pmbr


def create_gpt_entries(table: PartitionTable) -> bytes:
	if len(table.partitions) > GPT_ENTRIES_COUNT:
		raise OverflowError("too many partitions")
	data = bytes()
	for part in table.partitions:
		entry = EfiPartEntry()
		entry.set_type(part.type_code)
		entry.unique_guid = EfiGUID.generate()
		entry.start_lba = part.start_sector
		entry.end_lba = part.end_sector
		entry.set_part_name(part.name)
		data += bytes(entry)
	return bytes_pad(data, GPT_ENTRIES_COUNT * sizeof(EfiPartEntry))


def create_gpt_head(
	table: PartitionTable,
	entries: bytes,
	disk_guid: UUID,
	backup: bool = False,
) -> EfiPartTableHeader:
	total = table.disk_sectors
	sector = table.sector_size
	if total < gpt_primary_sectors(sector) + gpt_secondary_sectors(sector):
		raise ValueError("disk too small for GPT")
	new_gpt = EfiPartTableHeader()
	new_gpt.fill_header()
	new_gpt.entry_size = sizeof(EfiPartEntry)
	new_gpt.entries_count = GPT_ENTRIES_COUNT
	new_gpt.disk_guid = EfiGUID.from_uuid(disk_guid)
	new_gpt.first_usable_lba = gpt_primary_sectors(sector)
	new_gpt.last_usable_lba = total - gpt_secondary_sectors(sector) - 1
	if backup:
		new_gpt.current_lba = total - 1
		new_gpt.alternate_lba = 1
		new_gpt.part_entry_lba = total - 1 - gpt_entries_sectors(sector)
	else:
		new_gpt.current_lba = 1
		new_gpt.alternate_lba = total - 1
		new_gpt.part_entry_lba = 2
	new_gpt.entries_crc32 = crc32(entries)
	new_gpt.update_crc32()
	return new_gpt


class TableWriter:
	"""
	Write a synthesized partition table into a disk image file
	"""
	table: PartitionTable
	path: str

	def write_table(self, fp, table, lba: int):
		data = bytes(table)
		size = round_up(len(data), self.table.sector_size)
		data = bytes_pad(data, size)
		fp.seek(lba * self.table.sector_size, os.SEEK_SET)
		fp.write(data)
		log.debug(f"wrote {len(data)} bytes to LBA {lba}")

	def write_mbr(self, fp):
		mbr_id = int.from_bytes(os.urandom(4), "little")
		mbr = create_mbr(self.table, mbr_id)
		self.write_table(fp, mbr, 0)
		log.info(f"MBR partition table saved to {self.path} with id {mbr_id:08x}")

	def write_gpt(self, fp):
		disk_guid = uuid4()
		entries = create_gpt_entries(self.table)
		main = create_gpt_head(self.table, entries, disk_guid, backup=False)
		backup = create_gpt_head(self.table, entries, disk_guid, backup=True)
		self.write_table(fp, create_pmbr(self.table), 0)
		self.write_table(fp, main, main.current_lba)
		self.write_table(fp, entries, main.part_entry_lba)
		self.write_table(fp, entries, backup.part_entry_lba)
		self.write_table(fp, backup, backup.current_lba)
		log.info(f"GPT partition table saved to {self.path} with disk guid {disk_guid}")

	def write(self):
		with open(self.path, "r+b") as fp:
			if self.table.schema == SCHEMA_GPT:
				self.write_gpt(fp)
			elif self.table.schema == SCHEMA_MBR:
				self.write_mbr(fp)
			else:
				raise ValueError(f"unsupported partition table schema {self.table.schema}")
			fp.flush()

	def __init__(self, path: str, table: PartitionTable):
		self.path = path
		self.table = table


def write_partition_table(path: str, table: PartitionTable):
	TableWriter(path, table).write()
