import os
import shlex
import shutil
from logging import getLogger
log = getLogger(__name__)


MiB = 1 << 20


def parse_cmd_args(cmd: str | list[str]) -> list[str]:
	"""
	Parse command line to list
	parse_cmd_args("ls -la /mnt") = ["ls", "-la", "/mnt"]
	parse_cmd_args(["ls", "-la", "/mnt"]) = ["ls", "-la", "/mnt"]
	"""
	if type(cmd) is str: return shlex.split(cmd)
	elif type(cmd) is list: return cmd
	else: raise TypeError("unknown type for cmd")


def size_to_bytes(value: str | int) -> int:
	"""
	Convert gadget style size string to number, units are binary
	size_to_bytes("1M") = 1048576
	size_to_bytes("4K") = 4096
	size_to_bytes("0x1000") = 4096
	size_to_bytes(123) = 123
	"""
	units = {
		'B': 1,
		'K': 2**10, 'KB': 2**10, 'KiB': 2**10,
		'M': 2**20, 'MB': 2**20, 'MiB': 2**20,
		'G': 2**30, 'GB': 2**30, 'GiB': 2**30,
		'T': 2**40, 'TB': 2**40, 'TiB': 2**40,
	}
	if type(value) is int:
		if value < 0: raise ValueError(f"negative size {value}")
		return value
	if type(value) is not str:
		raise TypeError("bad size value")
	value = value.strip()
	if len(value) == 0: raise ValueError("empty size")
	if value.lower().startswith("0x"):
		return int(value, 16)

	# use the longest matched unit
	unit = max((u for u in units if value.endswith(u)), key=len, default="")
	number = value[:len(value) - len(unit)].strip()
	if not number.isdigit():
		raise ValueError(f"cannot parse size {value!r}")
	return int(number) * units.get(unit, 1)


def ceil_div(value: int, div: int) -> int:
	"""
	Integer division rounding toward positive infinity
	ceil_div(1048576, 512) = 2048
	ceil_div(1, 4096) = 1
	"""
	return -(-value // div)


def bytes_pad(b: bytes, size: int, trunc: bool = False, pad: bytes = b'\0') -> bytes:
	"""
	Padding a bytes to specified length
	"""
	l = len(b)

	# if larger than specified size, truncate
	if l > size and trunc:
		b = b[:size]

	# if smaller than specified size, padding
	if l < size:
		b += pad * (size - l)
	return b


def round_up(value: int, align: int) -> int:
	"""
	Align up a number, align must be a power of two
	round_up(0x2000, 0x1000) = 0x2000
	round_up(0x2001, 0x1000) = 0x3000
	round_up(0x1FFF, 0x1000) = 0x2000
	"""
	return (value + align - 1) & ~(align - 1)


def disk_usage(path: str) -> int:
	"""
	Apparent size in bytes of a folder tree, hard links counted once
	"""
	total = 0
	seen: set[tuple[int, int]] = set()
	for root, dirs, files in os.walk(path):
		for name in dirs + files:
			st = os.lstat(os.path.join(root, name))
			key = (st.st_dev, st.st_ino)
			if key in seen: continue
			seen.add(key)
			total += st.st_size
	return total


def copy_tree(src: str, dst: str):
	"""
	Copy a folder content into another folder, keeping symlinks
	"""
	log.debug(f"copying {src} to {dst}")
	shutil.copytree(src, dst, symlinks=True, dirs_exist_ok=True)
