import ctypes
from uuid import UUID, uuid4
from binascii import crc32
from logging import getLogger
from ubuntu_image.lib.utils import bytes_pad
from ubuntu_image.disk.layout.gpt.types import DiskTypesGPT
log = getLogger(__name__)


class EfiGUID(ctypes.Structure):
	"""
	GUID in the mixed endian layout UEFI stores on disk
	"""
	_pack_ = 1
	_fields_ = [
		("time_low",    ctypes.c_uint32),
		("time_mid",    ctypes.c_uint16),
		("time_hi",     ctypes.c_uint16),
		("node",        ctypes.c_uint8 * 8),
	]

	def to_uuid(self) -> UUID:
		return UUID(bytes_le=bytes(self))

	@staticmethod
	def from_uuid(u: UUID):
		return EfiGUID.from_buffer_copy(u.bytes_le)

	@staticmethod
	def generate():
		return EfiGUID.from_uuid(uuid4())

	def __str__(self) -> str:
		return str(self.to_uuid())


class EfiPartTableHeader(ctypes.Structure):
	"""
	GPT header, primary at LBA 1 and backup at the last LBA
	"""
	_pack_ = 1
	_fields_ = [
		("signature",        ctypes.c_char * 8),
		("revision",         ctypes.c_uint32),
		("header_size",      ctypes.c_uint32),
		("header_crc32",     ctypes.c_uint32),
		("reserved",         ctypes.c_uint32),
		("current_lba",      ctypes.c_uint64),
		("alternate_lba",    ctypes.c_uint64),
		("first_usable_lba", ctypes.c_uint64),
		("last_usable_lba",  ctypes.c_uint64),
		("disk_guid",        EfiGUID),
		("part_entry_lba",   ctypes.c_uint64),
		("entries_count",    ctypes.c_uint32),
		("entry_size",       ctypes.c_uint32),
		("entries_crc32",    ctypes.c_uint32),
	]
	SIGNATURE = b"EFI PART"
	REVISION = 0x00010000
	HEADER_SIZE = 92

	def fill_header(self):
		self.signature = self.SIGNATURE
		self.revision = self.REVISION
		self.header_size = self.HEADER_SIZE

	def calc_crc32(self) -> int:
		data = bytearray(bytes(self)[:self.header_size])
		# checksum is computed with its own field zeroed
		off = EfiPartTableHeader.header_crc32.offset
		data[off:off + 4] = bytes(4)
		return crc32(data)

	def update_crc32(self):
		self.header_crc32 = self.calc_crc32()

	def check_header(self) -> bool:
		if self.signature != self.SIGNATURE:
			log.debug(f"bad GPT signature {self.signature}")
			return False
		if self.revision != self.REVISION or self.header_size < self.HEADER_SIZE:
			log.debug(f"unsupported GPT revision {self.revision:08x} size {self.header_size}")
			return False
		if self.calc_crc32() != self.header_crc32:
			log.debug("GPT header crc32 mismatch")
			return False
		return True


class EfiPartEntry(ctypes.Structure):
	_pack_ = 1
	_fields_ = [
		("type_guid",       EfiGUID),
		("unique_guid",     EfiGUID),
		("start_lba",       ctypes.c_uint64),
		("end_lba",         ctypes.c_uint64),
		("attributes",      ctypes.c_uint64),
		("part_name",       ctypes.c_byte * 72),
	]

	def get_type_uuid(self) -> UUID:
		return self.type_guid.to_uuid()

	def set_type(self, t: UUID | str):
		u = DiskTypesGPT.lookup_one_id(t)
		if u is None: raise ValueError(f"bad GPT partition type {t}")
		self.type_guid = EfiGUID.from_uuid(u)

	def get_part_name(self) -> str:
		return bytes(self.part_name).decode("UTF-16LE").rstrip("\0")

	def set_part_name(self, name: str):
		size = EfiPartEntry.part_name.size
		data = name.encode("UTF-16LE")
		if len(data) > size: raise ValueError(f"partition name {name} too long")
		ctypes.memmove(self.part_name, bytes_pad(data, size), size)


assert(ctypes.sizeof(EfiGUID()) == 16)
assert(ctypes.sizeof(EfiPartTableHeader()) == 92)
assert(ctypes.sizeof(EfiPartEntry()) == 128)
