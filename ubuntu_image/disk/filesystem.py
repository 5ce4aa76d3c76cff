import os
from logging import getLogger
from ubuntu_image.lib.config import ConfigError
from ubuntu_image.lib.context import BuildContext
from ubuntu_image.gadget.structure import Structure
log = getLogger(__name__)


def create_sparse(path: str, size: int):
	"""
	Create (or recreate) a file of the given size without allocating it
	"""
	log.debug(f"creating {path} with {size} bytes")
	fd = os.open(path, os.O_RDWR | os.O_CREAT | os.O_TRUNC, mode=0o0644)
	try: os.ftruncate(fd, size)
	finally: os.close(fd)


def has_content(path: str) -> bool:
	return os.path.isdir(path) and len(os.listdir(path)) > 0


class FileSystemCreator:
	ctx: BuildContext
	structure: Structure
	content: str
	output: str

	def create(self): pass

	def __init__(
		self,
		ctx: BuildContext,
		structure: Structure,
		content: str,
		output: str,
	):
		self.ctx = ctx
		self.structure = structure
		self.content = content
		self.output = output


class EXT4Creator(FileSystemCreator):
	def create(self):
		cmds: list[str] = ["mkfs.ext4", "-F", "-q"]
		if self.structure.label: cmds.extend(["-L", self.structure.label])
		if has_content(self.content): cmds.extend(["-d", self.content])
		env = os.environ.copy()
		env["MKE2FS_DEVICE_SECTSIZE"] = str(self.ctx.common.sector_size)
		cmds.append(self.output)
		ret = self.ctx.run_external(cmds, env=env)
		if ret != 0: raise OSError("mkfs.ext4 failed")


class FatCreator(FileSystemCreator):
	def create(self):
		cmds: list[str] = ["mkfs.vfat"]
		bits: int = 0
		match self.structure.filesystem:
			case "vfat": bits = 32
			case "vfat-16": bits = 16
			case "vfat-32": bits = 32
			case _: raise ConfigError("unknown fat type")
		cmds.extend(["-F", str(bits), "-s", "1"])
		if self.structure.label: cmds.extend(["-n", self.structure.label])
		cmds.extend(["-S", str(self.ctx.common.sector_size)])
		cmds.append(self.output)
		ret = self.ctx.run_external(cmds)
		if ret != 0: raise OSError("mkfs.vfat failed")
		if has_content(self.content): self.copy()

	def copy(self):
		sources = [
			os.path.join(self.content, name)
			for name in sorted(os.listdir(self.content))
		]
		cmds = ["mcopy", "-s", "-i", self.output] + sources + ["::"]
		ret = self.ctx.run_external(cmds)
		if ret != 0: raise OSError("mcopy failed")


FILESYSTEM_CREATORS: dict[str, type[FileSystemCreator]] = {
	"ext4": EXT4Creator,
	"vfat": FatCreator,
	"vfat-16": FatCreator,
	"vfat-32": FatCreator,
}


def create_filesystem(
	ctx: BuildContext,
	structure: Structure,
	content: str,
	output: str,
	size: int,
):
	"""
	Create a filesystem image of size bytes holding everything under content
	"""
	t = FILESYSTEM_CREATORS.get(structure.filesystem)
	if t is None: raise ConfigError(
		f"unsupported filesystem {structure.filesystem}"
	)
	create_sparse(output, size)
	log.info(f"creating {structure.filesystem} image {output}")
	t(ctx, structure, content, output).create()


def create_raw_image(structure: Structure, gadget: str, output: str, size: int):
	"""
	Create a blob image and place every content image at its offset
	"""
	create_sparse(output, size)
	offset = 0
	with open(output, "r+b") as f:
		for content in structure.content:
			if not content.image: continue
			if content.offset is not None: offset = content.offset
			with open(os.path.join(gadget, content.image), "rb") as src:
				data = src.read()
			if content.size is not None: data = data[:content.size]
			if offset + len(data) > size:
				raise ConfigError(
					f"content {content.image} does not fit in structure "
					f"{structure.name or structure.label}"
				)
			log.debug(f"writing {content.image} at offset {offset} of {output}")
			f.seek(offset)
			f.write(data)
			offset += content.size if content.size is not None else len(data)
