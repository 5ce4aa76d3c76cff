import os
from logging import getLogger
from ubuntu_image.lib.utils import MiB, round_up
from ubuntu_image.gadget.structure import Volume, ROLE_MBR
from ubuntu_image.disk.filesystem import create_sparse
from ubuntu_image.disk.layout.table import PartitionTable, synthesize
from ubuntu_image.disk.layout.writer import write_partition_table
log = getLogger(__name__)


# boot code area of the MBR, the disk id follows it
MBR_BOOT_CODE_SIZE = 440


def copy_at(src: str, dst, offset: int, length: int = None):
	"""
	Copy a file into an open image at offset, zero blocks are left as holes
	"""
	remain = os.path.getsize(src) if length is None else length
	with open(src, "rb") as f:
		pos = offset
		while remain > 0:
			chunk = f.read(min(MiB, remain))
			if len(chunk) == 0: break
			if chunk.count(0) != len(chunk):
				dst.seek(pos)
				dst.write(chunk)
			pos += len(chunk)
			remain -= len(chunk)


def write_offset_values(dst, volume: Volume, image_size: int, sector: int):
	"""
	Write the start sector of every structure carrying offset-write as
	a 32-bit little-endian value at the requested location
	"""
	offsets = volume.start_offsets()
	for idx, structure in enumerate(volume.structures):
		ow = structure.offset_write
		if ow is None: continue
		location = ow.offset
		if ow.relative_to:
			found = volume.find_structure(ow.relative_to)
			if found is None: raise ValueError(
				f"offset-write of {structure.display_name(idx)} is relative "
				f"to unknown structure {ow.relative_to}"
			)
			location += offsets[found[0]]
		if location + 4 > image_size:
			raise ValueError("write offset beyond end of file")
		value = offsets[idx] // sector
		log.debug(f"writing offset {value} of {structure.display_name(idx)} at {location}")
		dst.seek(location)
		dst.write(value.to_bytes(4, "little"))


def part_image(volumes: str, volume: str, idx: int) -> str:
	return os.path.join(volumes, volume, f"part{idx}.img")


def make_volume_image(
	output: str,
	volume: Volume,
	volumes: str,
	image_size: int,
	sector: int,
	seeded: bool = False,
) -> tuple[PartitionTable, int]:
	"""
	Build the disk image of one volume out of its structure images
	Returns the partition table and the rootfs partition number
	"""
	# the backup GPT lives in the last whole sector
	aligned = round_up(image_size, sector)
	if aligned != image_size:
		log.warning(f"image size {image_size} of volume {volume.name} rounded up to {aligned}")
		image_size = aligned
	table, rootfs = synthesize(volume, sector, image_size, seeded)
	log.debug(f"{table.schema} table of volume {volume.name} reserves {table.table_size()} bytes")
	if os.path.exists(output):
		log.debug(f"target {output} exists, removing")
		os.remove(output)
	create_sparse(output, image_size)
	write_partition_table(output, table)
	offsets = volume.start_offsets()
	with open(output, "r+b") as dst:
		for idx, structure in enumerate(volume.structures):
			if structure.should_skip(seeded): continue
			src = part_image(volumes, volume.name, idx)
			if not os.path.exists(src):
				raise FileNotFoundError(f"missing structure image {src}")
			length = None
			if structure.role == ROLE_MBR: length = min(
				os.path.getsize(src), MBR_BOOT_CODE_SIZE
			)
			log.debug(f"copying {src} to {output} at offset {offsets[idx]}")
			copy_at(src, dst, offsets[idx], length)
		write_offset_values(dst, volume, image_size, sector)
	log.info(f"created disk image {output} with {image_size} bytes")
	return table, rootfs
