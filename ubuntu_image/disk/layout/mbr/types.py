from ubuntu_image.disk.layout.types import DiskTypes


class DiskTypesMBR(DiskTypes):
	@classmethod
	def parse(cls, t) -> int | None:
		"""
		Gadget MBR types are two hex digits, "83" or "0C"
		"""
		if type(t) is int: code = t
		elif type(t) is str and len(t.strip()) <= 2:
			try: code = int(t.strip(), 16)
			except ValueError: return None
		else: return None
		return code if 0 < code <= 0xff else None

	types: list[tuple[int, str]] = [
		(0x06, "fat16"),
		(0x0b, "fat32"),
		(0x0c, "fat32-lba"),
		(0x0e, "fat16-lba"),
		(0x82, "linux-swap"),
		(0x83, "linux"),
		(0x8e, "linux-lvm"),
		(0xda, "non-fs-data"),
		(0xea, "linux-boot"),
		(0xee, "gpt"),
		(0xef, "efi"),
		(0xef, "esp"),
		(0xfd, "linux-raid"),
	]
