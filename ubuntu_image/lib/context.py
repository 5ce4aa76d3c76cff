import os
from typing import Self
from subprocess import Popen, PIPE
from logging import getLogger
from ubuntu_image.lib import json
from ubuntu_image.lib.loop import loop_setup, loop_detach
from ubuntu_image.lib.utils import parse_cmd_args
from ubuntu_image.lib.mount import MountPoint
from ubuntu_image.lib.serializable import SerializableDict
from ubuntu_image.gadget.structure import GadgetInfo
from ubuntu_image.disk.layout.table import PartitionTable
from ubuntu_image.machine.options import CommonOptions
log = getLogger(__name__)


class BuildContext(SerializableDict):
	"""
	State shared by every step of a build, saved as the checkpoint
	"""
	VERSION = 1

	"""
	Build variant name (snap, classic, pack)
	"""
	variant: str

	"""
	Names of the steps for this build and index of the next one to run
	"""
	steps: list[str]
	next_step: int

	"""
	Work directory holding every intermediate file
	"""
	work: str

	"""
	Options of the invocation
	"""
	common: CommonOptions
	options: SerializableDict | dict

	"""
	Gadget description and where it was loaded from
	"""
	gadget: GadgetInfo | None
	yaml_path: str
	is_seeded: bool

	"""
	Requested image size per volume, final sizes are decided at make_disk
	"""
	image_sizes: dict[str, int]
	rootfs_size: int

	"""
	Partition tables written by make_disk and the rootfs partition number
	"""
	partition_tables: dict[str, PartitionTable]
	rootfs_part_num: int

	"""
	Output image file name per volume
	"""
	volume_names: dict[str, str]
	output_dir: str

	"""
	Debian architecture of the image
	"""
	arch: str

	"""
	Anything else steps want to carry to later steps
	"""
	artifacts: dict

	"""
	Parsed image definition for classic builds, not saved
	"""
	definition: object

	"""
	Loop devices and mounts to release at cleanup, not saved
	"""
	loops: list[str]
	mounted: list[MountPoint]

	def get_rootfs(self): return os.path.join(self.work, "root")
	def get_unpack(self): return os.path.join(self.work, "unpack")
	def get_volumes(self): return os.path.join(self.work, "volumes")
	def get_chroot(self): return os.path.join(self.work, "chroot")
	def get_scratch(self): return os.path.join(self.work, "scratch")
	def get_gadget(self): return os.path.join(self.get_unpack(), "gadget")

	def get_output(self) -> str:
		if self.output_dir: return self.output_dir
		if self.common.output_dir: return self.common.output_dir
		return self.work

	def run_external(
		self,
		cmd: str | list[str],
		/,
		cwd: str = None,
		env: dict = None,
		stdin: str | bytes = None,
		want_stdout: bool = False,
	) -> int | tuple[int, str]:
		"""
		Run external command
		run_external("mkfs.ext4 -F ext4.img")
		"""
		args = parse_cmd_args(cmd)
		argv = " ".join(args)
		log.debug(f"running external command {argv}")
		fstdin = None if stdin is None else PIPE
		fstdout = None if not want_stdout else PIPE
		proc = Popen(args, cwd=cwd, env=env, stdin=fstdin, stdout=fstdout)
		if stdin is not None:
			if type(stdin) is str: stdin = stdin.encode()
		out, _ = proc.communicate(stdin)
		ret = proc.returncode
		log.debug(f"command exit with {ret}")
		if not want_stdout:
			return ret
		return (ret, out.decode())

	def run_chroot(self, root: str, cmd: str | list[str], env: dict = None) -> int:
		"""
		Run a command inside a chroot
		"""
		return self.run_external(["chroot", root] + parse_cmd_args(cmd), env=env)

	def loop_setup(self, path: str) -> str:
		dev = loop_setup(self, path, self.common.sector_size)
		self.loops.append(dev)
		return dev

	def mount(
		self,
		source: str,
		target: str,
		fstype: str = None,
		options: str = None,
	) -> MountPoint:
		"""
		Add a mount point
		"""
		mnt = MountPoint(source, target, fstype, options)
		mnt.mount(self)
		self.mounted.insert(0, mnt)
		return mnt

	def cleanup(self):
		"""
		Undo mounts and detach loops, newest first
		"""
		failed: list[str] = []
		while len(self.mounted) > 0:
			mnt = self.mounted.pop(0)
			try: mnt.umount(self)
			except OSError as e:
				log.error(f"failed to umount {mnt.target}: {e}")
				failed.append(mnt.target)
		while len(self.loops) > 0:
			loop = self.loops.pop()
			log.debug(f"detaching loop {loop}")
			try: loop_detach(self, loop)
			except OSError as e:
				log.error(f"failed to detach {loop}: {e}")
				failed.append(loop)
		if len(failed) > 0:
			raise RuntimeError(f"failed to release {', '.join(failed)}")

	def to_dict(self) -> dict:
		return {
			"version": self.VERSION,
			"variant": self.variant,
			"steps": self.steps,
			"next_step": self.next_step,
			"work": self.work,
			"common": self.common,
			"options": self.options,
			"gadget": self.gadget,
			"yaml_path": self.yaml_path,
			"is_seeded": self.is_seeded,
			"image_sizes": self.image_sizes,
			"rootfs_size": self.rootfs_size,
			"partition_tables": self.partition_tables,
			"rootfs_part_num": self.rootfs_part_num,
			"volume_names": self.volume_names,
			"output_dir": self.output_dir,
			"arch": self.arch,
			"artifacts": self.artifacts,
		}

	def from_dict(self, o: dict) -> Self:
		if o.get("version") != self.VERSION:
			raise ValueError(f"unsupported checkpoint version {o.get('version')}")
		self.variant = o.get("variant", self.variant)
		self.steps = list(o.get("steps", self.steps))
		self.next_step = int(o.get("next_step", self.next_step))
		self.work = o.get("work", self.work)
		if o.get("common"): self.common = CommonOptions(o["common"])
		self.options = dict(o.get("options") or {})
		if o.get("gadget"): self.gadget = GadgetInfo(o["gadget"])
		self.yaml_path = o.get("yaml_path", self.yaml_path)
		self.is_seeded = bool(o.get("is_seeded", self.is_seeded))
		self.image_sizes = dict(o.get("image_sizes") or {})
		self.rootfs_size = int(o.get("rootfs_size", self.rootfs_size))
		self.partition_tables = {
			name: PartitionTable(table)
			for name, table in (o.get("partition_tables") or {}).items()
		}
		self.rootfs_part_num = int(o.get("rootfs_part_num", self.rootfs_part_num))
		self.volume_names = dict(o.get("volume_names") or {})
		self.output_dir = o.get("output_dir", self.output_dir)
		self.arch = o.get("arch", self.arch)
		self.artifacts = dict(o.get("artifacts") or {})
		return self

	def save(self, path: str):
		"""
		Write the checkpoint, replacing any previous one in a single rename
		"""
		tmp = f"{path}.tmp"
		with open(tmp, "w") as f:
			json.dump(self.to_dict(), f, indent=2)
			f.flush()
			os.fsync(f.fileno())
		os.replace(tmp, path)
		log.debug(f"saved checkpoint {path} at step {self.next_step}")

	@classmethod
	def load(cls, path: str) -> Self:
		with open(path, "r") as f:
			data = json.load(f)
		if type(data) is not dict:
			raise ValueError(f"checkpoint {path} is not an object")
		return cls().from_dict(data)

	def __init__(self, variant: str = "", work: str = ""):
		self.variant = variant
		self.steps = []
		self.next_step = 0
		self.work = work
		self.common = CommonOptions()
		self.options = {}
		self.gadget = None
		self.yaml_path = ""
		self.is_seeded = False
		self.image_sizes = {}
		self.rootfs_size = 0
		self.partition_tables = {}
		self.rootfs_part_num = -1
		self.volume_names = {}
		self.output_dir = ""
		self.arch = ""
		self.artifacts = {}
		self.definition = None
		self.loops = []
		self.mounted = []
