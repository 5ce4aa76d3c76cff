import ctypes
from logging import getLogger
from ubuntu_image.disk.layout.mbr.types import DiskTypesMBR
log = getLogger(__name__)


def lba_to_chs(lba: int, sectors: int = 63, heads: int = 255) -> tuple[int, int, int]:
	"""
	Convert LBA to packed CHS fields (head, sector, track),
	addresses beyond CHS range saturate to 1023/254/63
	"""
	cylinder = lba // (sectors * heads)
	head = (lba // sectors) % heads
	sector = lba % sectors + 1
	if cylinder > 1023: return 254, 0xff, 0xff
	return head, sector | ((cylinder >> 2) & 0xc0), cylinder & 0xff


class MbrPartEntry(ctypes.Structure):
	_pack_ = 1
	_fields_ = [
		("boot_indicator",  ctypes.c_uint8),
		("start_head",      ctypes.c_uint8),
		("start_sector",    ctypes.c_uint8),
		("start_track",     ctypes.c_uint8),
		("os_indicator",    ctypes.c_uint8),
		("end_head",        ctypes.c_uint8),
		("end_sector",      ctypes.c_uint8),
		("end_track",       ctypes.c_uint8),
		("start_lba",       ctypes.c_uint32),
		("size_lba",        ctypes.c_uint32),
	]

	def is_bootable(self) -> bool:
		return self.boot_indicator == 0x80

	def set_bootable(self, bootable: bool):
		self.boot_indicator = 0x80 if bootable else 0

	def set_type(self, t: int | str):
		g = DiskTypesMBR.lookup_one_id(t)
		if g is None: raise ValueError(f"bad MBR partition type {t}")
		self.os_indicator = g

	def set_area(self, start_lba: int, size_lba: int):
		if start_lba + size_lba > 0xffffffff:
			raise ValueError("partition does not fit in MBR address range")
		self.start_lba = start_lba
		self.size_lba = size_lba
		self.start_head, self.start_sector, self.start_track = lba_to_chs(start_lba)
		end = start_lba + size_lba - 1 if size_lba > 0 else start_lba
		self.end_head, self.end_sector, self.end_track = lba_to_chs(end)


class MasterBootRecord(ctypes.Structure):
	_pack_ = 1
	_fields_ = [
		("boot_code",   ctypes.c_byte * 440),
		("mbr_id",      ctypes.c_uint32),
		("reserved",    ctypes.c_uint16),
		("partitions",  MbrPartEntry * 4),
		("signature",   ctypes.c_uint16),
	]
	MBR_SIGNATURE: int = 0xaa55

	def fill_header(self):
		self.signature = self.MBR_SIGNATURE

	def check_signature(self) -> bool:
		return self.signature == self.MBR_SIGNATURE


assert(ctypes.sizeof(MbrPartEntry()) == 16)
assert(ctypes.sizeof(MasterBootRecord()) == 512)
