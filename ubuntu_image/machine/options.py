import os
from logging import getLogger
from ubuntu_image.lib.cpu import cpu_arch_get, cpu_arch_name_map
from ubuntu_image.lib.config import ConfigError
from ubuntu_image.lib.serializable import SerializableDict
log = getLogger(__name__)


SECTOR_SIZES = [512, 4096]


def _abspath(path: str) -> str:
	return os.path.abspath(path) if path else ""


class CommonOptions(SerializableDict):
	"""
	Options shared by every build variant
	"""
	debug: bool
	verbose: bool
	quiet: bool
	output_dir: str
	image_size: str
	sector_size: int
	disk_info: str
	hooks_directories: list[str]
	channel: str

	def set_defaults(self):
		if self.sector_size is None: self.sector_size = 512
		if self.sector_size not in SECTOR_SIZES:
			raise ConfigError(f"unsupported sector size {self.sector_size}")
		if sum([self.debug, self.verbose, self.quiet]) > 1:
			raise ConfigError("--quiet, --verbose and --debug flags are mutually exclusive")
		self.output_dir = _abspath(self.output_dir)
		self.disk_info = _abspath(self.disk_info)
		self.hooks_directories = [_abspath(d) for d in self.hooks_directories]

	def restore_keys(self, saved: "CommonOptions"):
		"""
		A resumed build keeps the sector size it was started with
		"""
		if saved is None or saved.sector_size is None: return
		if self.sector_size is None:
			self.sector_size = saved.sector_size
		elif self.sector_size != saved.sector_size:
			raise ConfigError(
				f"sector size is {self.sector_size} but the build "
				f"being resumed used {saved.sector_size}"
			)

	def __init__(self, o: dict = None):
		self.debug = False
		self.verbose = False
		self.quiet = False
		self.output_dir = ""
		self.image_size = ""
		self.sector_size = None
		self.disk_info = ""
		self.hooks_directories = []
		self.channel = ""
		super().__init__(o)


class MachineOptions(SerializableDict):
	"""
	Options controlling which steps run and where state lives
	"""
	workdir: str
	until: str
	thru: str
	resume: bool

	def set_defaults(self):
		self.workdir = _abspath(self.workdir)
		if self.until: self.until = self.until.replace("-", "_")
		if self.thru: self.thru = self.thru.replace("-", "_")
		if self.resume and not self.workdir:
			raise ConfigError("must specify workdir when using --resume flag")
		if self.until and self.thru and self.until != self.thru:
			raise ConfigError("cannot specify both --until and --thru")

	def __init__(self, o: dict = None):
		self.workdir = ""
		self.until = ""
		self.thru = ""
		self.resume = False
		super().__init__(o)


class VariantOptions(SerializableDict):
	"""
	Base of the per-variant option structs
	KEYS are the options that identify a build across --resume
	"""
	KEYS: list[str] = []

	def set_defaults(self): pass

	def restore_keys(self, saved: dict):
		"""
		Fill key options omitted on resume from a checkpoint,
		a key given with another value is an error
		"""
		for key in self.KEYS:
			old = saved.get(key, "")
			new = getattr(self, key)
			if not new:
				setattr(self, key, old)
			elif old and new != old:
				raise ConfigError(
					f"option {key} is {new} but the build being resumed used {old}"
				)


class SnapOptions(VariantOptions):
	KEYS = ["model_assertion"]
	model_assertion: str
	snaps: list[str]
	revisions: dict[str, int]
	cloud_init: str
	disable_console_conf: bool
	factory_image: bool
	preseed: bool

	def set_defaults(self):
		self.model_assertion = _abspath(self.model_assertion)
		self.cloud_init = _abspath(self.cloud_init)

	def __init__(self, o: dict = None):
		self.model_assertion = ""
		self.snaps = []
		self.revisions = {}
		self.cloud_init = ""
		self.disable_console_conf = False
		self.factory_image = False
		self.preseed = False
		super().__init__(o)


class ClassicOptions(VariantOptions):
	KEYS = ["image_definition"]
	image_definition: str

	def set_defaults(self):
		self.image_definition = _abspath(self.image_definition)

	def __init__(self, o: dict = None):
		self.image_definition = ""
		super().__init__(o)


class PackOptions(VariantOptions):
	KEYS = ["gadget_dir", "rootfs_dir"]
	gadget_dir: str
	rootfs_dir: str
	artifact_type: str
	architecture: str

	def set_defaults(self):
		self.gadget_dir = _abspath(self.gadget_dir)
		self.rootfs_dir = _abspath(self.rootfs_dir)
		if not self.artifact_type: self.artifact_type = "raw"
		if self.artifact_type != "raw":
			raise ConfigError(f"unsupported artifact type {self.artifact_type}")
		if self.architecture: self.architecture = cpu_arch_name_map(self.architecture)
		else: self.architecture = cpu_arch_get()

	def __init__(self, o: dict = None):
		self.gadget_dir = ""
		self.rootfs_dir = ""
		self.artifact_type = ""
		self.architecture = ""
		super().__init__(o)
