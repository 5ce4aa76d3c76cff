import os
import libarchive
from contextlib import chdir
from libarchive.extract import (
	EXTRACT_OWNER, EXTRACT_PERM, EXTRACT_TIME,
	EXTRACT_ACL, EXTRACT_XATTR, EXTRACT_SPARSE,
)
from logging import getLogger
from ubuntu_image.lib.config import ConfigError
log = getLogger(__name__)


# rootfs archives carry owners, device nodes and absolute symlinks
EXTRACT_FLAGS = (
	EXTRACT_OWNER | EXTRACT_PERM | EXTRACT_TIME |
	EXTRACT_ACL | EXTRACT_XATTR | EXTRACT_SPARSE
)

# libarchive filter of each image definition compression name
COMPRESSION_FILTERS: dict[str, str | None] = {
	"uncompressed": None,
	"bzip2": "bzip2",
	"gzip": "gzip",
	"xz": "xz",
	"zstd": "zstd",
}


def extract_archive(path: str, dest: str):
	"""
	Extract an archive of any supported format and compression into dest
	libarchive extracts relative to the working directory
	"""
	path = os.path.abspath(path)
	os.makedirs(dest, mode=0o0755, exist_ok=True)
	log.debug(f"extracting {path} to {dest}")
	with chdir(dest):
		libarchive.extract_file(path, EXTRACT_FLAGS)


def create_archive(src: str, output: str, compression: str):
	"""
	Archive the content of a folder as a tarball, paths relative to src
	"""
	if compression not in COMPRESSION_FILTERS:
		raise ConfigError(f"unknown compression {compression}")
	output = os.path.abspath(output)
	names = sorted(os.listdir(src))
	with chdir(src), libarchive.file_writer(
		output, "gnutar", COMPRESSION_FILTERS[compression],
	) as archive:
		if len(names) > 0: archive.add_files(*names)
	log.info(f"created {compression} archive {output}")
