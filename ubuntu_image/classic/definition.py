import os
import re
from logging import getLogger
from ubuntu_image.lib.config import ConfigError, load_config_file
from ubuntu_image.lib.serializable import SerializableDict
log = getLogger(__name__)


GADGET_TYPES = ["git", "directory", "prebuilt"]
POCKETS = ["release", "security", "updates", "proposed"]
COMPRESSIONS = ["uncompressed", "bzip2", "gzip", "xz", "zstd"]
PASSWORD_TYPES = ["text", "hash"]
PPA_NAME = re.compile(r"^[a-zA-Z0-9_.+-]+/[a-zA-Z0-9_.+-]+$")
PPA_AUTH = re.compile(r"^[a-zA-Z0-9_.+-]+:[a-zA-Z0-9]+$")
SECURITY_MIRROR = "http://security.ubuntu.com/ubuntu/"


def _section(config: dict, key: str, where: str) -> dict | None:
	value = config.get(key)
	if value is None: return None
	if type(value) is not dict:
		raise ConfigError(f"{where}{key} must be a mapping")
	return value


def _list(config: dict, key: str, where: str) -> list:
	value = config.get(key)
	if value is None: return []
	if type(value) is not list:
		raise ConfigError(f"{where}{key} must be a list")
	return value


def _str(config: dict, key: str, default: str = "") -> str:
	value = config.get(key)
	return default if value is None else str(value)


def _bool(config: dict, key: str, default: bool) -> bool:
	value = config.get(key)
	if value is None: return default
	if type(value) is not bool:
		raise ConfigError(f"{key} must be a boolean")
	return value


def strip_file_url(url: str) -> str:
	"""
	strip_file_url("file:///srv/gadget") = "/srv/gadget"
	"""
	return url[len("file://"):] if url.startswith("file://") else url


def check_manual_path(key: str, path: str):
	if not path.startswith("/") or "/../" in path:
		raise ConfigError(f"Key {key} needs to be an absolute path ({path})")


class GadgetDef(SerializableDict):
	url: str
	type: str
	ref: str
	branch: str
	target: str

	def __init__(self, o: dict = None):
		self.url = ""
		self.type = ""
		self.ref = ""
		self.branch = ""
		self.target = ""
		super().__init__(o)


class Seed(SerializableDict):
	urls: list[str]
	names: list[str]
	branch: str
	vcs: bool

	def __init__(self, o: dict = None):
		self.urls = []
		self.names = []
		self.branch = ""
		self.vcs = True
		super().__init__(o)


class Tarball(SerializableDict):
	url: str
	gpg: str
	sha256sum: str

	def __init__(self, o: dict = None):
		self.url = ""
		self.gpg = ""
		self.sha256sum = ""
		super().__init__(o)


class RootfsDef(SerializableDict):
	archive: str
	flavor: str
	mirror: str
	pocket: str
	components: list[str]
	seed: Seed | None
	tarball: Tarball | None
	archive_tasks: list[str]

	def __init__(self, o: dict = None):
		self.archive = "ubuntu"
		self.flavor = "ubuntu"
		self.mirror = "http://archive.ubuntu.com/ubuntu/"
		self.pocket = "release"
		self.components = ["main", "restricted"]
		self.seed = None
		self.tarball = None
		self.archive_tasks = []
		super().__init__(o)


class PPA(SerializableDict):
	name: str
	auth: str
	fingerprint: str
	keep_enabled: bool

	@property
	def user(self) -> str: return self.name.split("/")[0]

	@property
	def archive(self) -> str: return self.name.split("/")[1]

	def url(self) -> str:
		if self.auth: base = f"https://{self.auth}@private-ppa.launchpadcontent.net"
		else: base = "https://ppa.launchpadcontent.net"
		return f"{base}/{self.user}/{self.archive}/ubuntu"

	def file_name(self, series: str) -> str:
		return f"{self.user}-ubuntu-{self.archive}-{series}.list"

	def file_content(self, series: str) -> str:
		return f"deb {self.url()} {series} main\n"

	def __init__(self, o: dict = None):
		self.name = ""
		self.auth = ""
		self.fingerprint = ""
		self.keep_enabled = True
		super().__init__(o)


class SnapDef(SerializableDict):
	name: str
	revision: int
	store: str
	channel: str

	def __init__(self, o: dict = None):
		self.name = ""
		self.revision = 0
		self.store = "canonical"
		self.channel = "stable"
		super().__init__(o)


class CloudInit(SerializableDict):
	meta_data: str
	user_data: str
	network_config: str

	def __init__(self, o: dict = None):
		self.meta_data = ""
		self.user_data = ""
		self.network_config = ""
		super().__init__(o)


class FstabEntry(SerializableDict):
	label: str
	mountpoint: str
	filesystem_type: str
	mount_options: str
	dump: bool
	fsck_order: int

	def line(self) -> str:
		return "\t".join([
			f"LABEL={self.label}",
			self.mountpoint,
			self.filesystem_type,
			self.mount_options,
			"1" if self.dump else "0",
			str(self.fsck_order),
		])

	def __init__(self, o: dict = None):
		self.label = ""
		self.mountpoint = ""
		self.filesystem_type = ""
		self.mount_options = "defaults"
		self.dump = False
		self.fsck_order = 0
		super().__init__(o)


class MakeDir(SerializableDict):
	path: str
	permissions: int

	def __init__(self, o: dict = None):
		self.path = ""
		self.permissions = 0o0755
		super().__init__(o)


class CopyFile(SerializableDict):
	source: str
	destination: str

	def __init__(self, o: dict = None):
		self.source = ""
		self.destination = ""
		super().__init__(o)


class AddGroup(SerializableDict):
	name: str
	id: str

	def __init__(self, o: dict = None):
		self.name = ""
		self.id = ""
		super().__init__(o)


class AddUser(SerializableDict):
	name: str
	id: str
	password: str
	password_type: str
	expire: bool

	def __init__(self, o: dict = None):
		self.name = ""
		self.id = ""
		self.password = ""
		self.password_type = "hash"
		self.expire = True
		super().__init__(o)


class Manual(SerializableDict):
	make_dirs: list[MakeDir]
	copy_file: list[CopyFile]
	execute: list[str]
	touch_file: list[str]
	add_group: list[AddGroup]
	add_user: list[AddUser]

	def __init__(self, o: dict = None):
		self.make_dirs = []
		self.copy_file = []
		self.execute = []
		self.touch_file = []
		self.add_group = []
		self.add_user = []
		super().__init__(o)


class Customization(SerializableDict):
	components: list[str]
	pocket: str
	cloud_init: CloudInit | None
	extra_ppas: list[PPA]
	extra_packages: list[str]
	extra_snaps: list[SnapDef]
	fstab: list[FstabEntry]
	manual: Manual | None

	def __init__(self, o: dict = None):
		self.components = ["main", "restricted", "universe"]
		self.pocket = "release"
		self.cloud_init = None
		self.extra_ppas = []
		self.extra_packages = []
		self.extra_snaps = []
		self.fstab = []
		self.manual = None
		super().__init__(o)


class VolumeArtifact(SerializableDict):
	"""
	An image file made out of one gadget volume
	"""
	name: str
	volume: str

	def __init__(self, o: dict = None):
		self.name = ""
		self.volume = ""
		super().__init__(o)


class RootfsTarball(SerializableDict):
	name: str
	compression: str

	def __init__(self, o: dict = None):
		self.name = ""
		self.compression = "uncompressed"
		super().__init__(o)


class Artifacts(SerializableDict):
	img: list[VolumeArtifact]
	qcow2: list[VolumeArtifact]
	manifest: str
	filelist: str
	rootfs_tarball: RootfsTarball | None

	def has_disk(self) -> bool:
		return len(self.img) > 0 or len(self.qcow2) > 0

	def __init__(self, o: dict = None):
		self.img = []
		self.qcow2 = []
		self.manifest = ""
		self.filelist = ""
		self.rootfs_tarball = None
		super().__init__(o)


class ImageDefinition(SerializableDict):
	"""
	A classic image definition file
	"""
	name: str
	display_name: str
	revision: int
	architecture: str
	series: str
	kernel: str
	model_assertion: str
	image_class: str
	gadget: GadgetDef | None
	rootfs: RootfsDef
	customization: Customization | None
	artifacts: Artifacts

	"""
	Folder of the definition file, relative paths inside are based on it
	"""
	folder: str

	def resolve(self, path: str) -> str:
		path = strip_file_url(path)
		if os.path.isabs(path): return path
		return os.path.join(self.folder, path)

	def security_mirror(self) -> str:
		if self.architecture in ["amd64", "i386"]:
			return SECURITY_MIRROR
		return self.rootfs.mirror

	def pocket_list(self, components: list[str], pocket: str) -> list[str]:
		"""
		Lines of sources.list for a pocket, each pocket includes the ones before
		"""
		base = f"deb {{}} {self.series}{{}} {' '.join(components)}\n"
		mirror, security = self.rootfs.mirror, self.security_mirror()
		lines = [
			base.format(mirror, ""),
			base.format(security, "-security"),
			base.format(mirror, "-updates"),
			base.format(mirror, "-proposed"),
		]
		return lines[:POCKETS.index(pocket.lower()) + 1]

	def build_pocket_list(self) -> list[str]:
		return self.pocket_list(self.rootfs.components, self.rootfs.pocket)

	def target_pocket_list(self) -> list[str]:
		custom = self.customization or Customization()
		return self.pocket_list(custom.components, custom.pocket)

	def __init__(self, o: dict = None):
		self.name = ""
		self.display_name = ""
		self.revision = 0
		self.architecture = ""
		self.series = ""
		self.kernel = ""
		self.model_assertion = ""
		self.image_class = ""
		self.gadget = None
		self.rootfs = RootfsDef()
		self.customization = None
		self.artifacts = Artifacts()
		self.folder = ""
		super().__init__(o)


def parse_gadget(config: dict) -> GadgetDef:
	g = GadgetDef()
	g.url = _str(config, "url")
	g.type = _str(config, "type")
	g.ref = _str(config, "ref")
	g.branch = _str(config, "branch")
	g.target = _str(config, "target")
	if g.type not in GADGET_TYPES:
		raise ConfigError(f"gadget:type must be one of {', '.join(GADGET_TYPES)}")
	if g.type != "prebuilt" and not g.url:
		raise ConfigError(f"When key gadget:type is specified as {g.type}, a URL must be provided")
	return g


def parse_rootfs(config: dict) -> RootfsDef:
	r = RootfsDef()
	r.archive = _str(config, "archive", r.archive)
	r.flavor = _str(config, "flavor", r.flavor)
	r.mirror = _str(config, "mirror", r.mirror)
	r.pocket = _str(config, "pocket", r.pocket).lower()
	if "components" in config:
		r.components = [str(c) for c in _list(config, "components", "rootfs:")]
	seed = _section(config, "seed", "rootfs:")
	if seed is not None:
		r.seed = Seed()
		r.seed.urls = [str(u) for u in _list(seed, "urls", "rootfs:seed:")]
		r.seed.names = [str(n) for n in _list(seed, "names", "rootfs:seed:")]
		r.seed.branch = _str(seed, "branch")
		r.seed.vcs = _bool(seed, "vcs", True)
		if not r.seed.urls or not r.seed.names:
			raise ConfigError("rootfs:seed requires urls and names")
	tarball = _section(config, "tarball", "rootfs:")
	if tarball is not None:
		r.tarball = Tarball()
		r.tarball.url = _str(tarball, "url")
		r.tarball.gpg = _str(tarball, "gpg")
		r.tarball.sha256sum = _str(tarball, "sha256sum").lower()
		if not r.tarball.url:
			raise ConfigError("rootfs:tarball requires url")
		if r.tarball.sha256sum and len(r.tarball.sha256sum) != 64:
			raise ConfigError("rootfs:tarball:sha256sum must be 64 characters long")
	r.archive_tasks = [str(t) for t in _list(config, "archive-tasks", "rootfs:")]
	if r.pocket not in POCKETS:
		raise ConfigError(f"rootfs:pocket must be one of {', '.join(POCKETS)}")
	sources = sum([r.seed is not None, r.tarball is not None, len(r.archive_tasks) > 0])
	if sources != 1:
		raise ConfigError("rootfs requires exactly one of seed, tarball or archive-tasks")
	return r


def parse_ppa(config: dict) -> PPA:
	p = PPA()
	p.name = _str(config, "name")
	p.auth = _str(config, "auth")
	p.fingerprint = _str(config, "fingerprint")
	p.keep_enabled = _bool(config, "keep-enabled", True)
	if not PPA_NAME.match(p.name):
		raise ConfigError(f"invalid ppa name {p.name!r}")
	if p.auth and not PPA_AUTH.match(p.auth):
		raise ConfigError(f"invalid auth for ppa {p.name}")
	if p.auth and not p.fingerprint:
		raise ConfigError(f"Fingerprint is required for private PPAs ({p.name})")
	return p


def parse_snap(config: dict) -> SnapDef:
	s = SnapDef()
	s.name = _str(config, "name")
	s.store = _str(config, "store", s.store)
	s.channel = _str(config, "channel", s.channel)
	s.revision = int(config.get("revision") or 0)
	if not s.name: raise ConfigError("extra-snaps entries require a name")
	return s


def parse_fstab(config: dict) -> FstabEntry:
	f = FstabEntry()
	f.label = _str(config, "label")
	f.mountpoint = _str(config, "mountpoint")
	f.filesystem_type = _str(config, "filesystem-type")
	f.mount_options = _str(config, "mount-options", f.mount_options)
	f.dump = _bool(config, "dump", False)
	f.fsck_order = int(config.get("fsck-order") or 0)
	if not f.label or not f.mountpoint or not f.filesystem_type:
		raise ConfigError("fstab entries require label, mountpoint and filesystem-type")
	return f


def parse_manual(config: dict) -> Manual:
	m = Manual()
	w = "customization:manual:"
	for item in _list(config, "make-dirs", w):
		d = MakeDir()
		d.path = _str(item, "path")
		if "permissions" in item: d.permissions = int(item["permissions"])
		check_manual_path(f"{w}mkdir:destination", d.path)
		m.make_dirs.append(d)
	for item in _list(config, "copy-file", w):
		c = CopyFile()
		c.source = _str(item, "source")
		c.destination = _str(item, "destination")
		check_manual_path(f"{w}copy-file:destination", c.destination)
		m.copy_file.append(c)
	for item in _list(config, "execute", w):
		path = _str(item, "path")
		check_manual_path(f"{w}execute:path", path)
		m.execute.append(path)
	for item in _list(config, "touch-file", w):
		path = _str(item, "path")
		check_manual_path(f"{w}touch-file:path", path)
		m.touch_file.append(path)
	for item in _list(config, "add-group", w):
		g = AddGroup()
		g.name = _str(item, "name")
		g.id = _str(item, "id")
		m.add_group.append(g)
	for item in _list(config, "add-user", w):
		u = AddUser()
		u.name = _str(item, "name")
		u.id = _str(item, "id")
		u.password = _str(item, "password")
		u.password_type = _str(item, "password-type", u.password_type)
		u.expire = _bool(item, "expire", True)
		if u.password_type not in PASSWORD_TYPES:
			raise ConfigError(f"{w}add-user:password-type must be text or hash")
		m.add_user.append(u)
	return m


def parse_customization(config: dict) -> Customization:
	c = Customization()
	w = "customization:"
	if "components" in config:
		c.components = [str(x) for x in _list(config, "components", w)]
	c.pocket = _str(config, "pocket", c.pocket).lower()
	if c.pocket not in POCKETS:
		raise ConfigError(f"customization:pocket must be one of {', '.join(POCKETS)}")
	cloud_init = _section(config, "cloud-init", w)
	if cloud_init is not None:
		c.cloud_init = CloudInit()
		c.cloud_init.meta_data = _str(cloud_init, "meta-data")
		c.cloud_init.user_data = _str(cloud_init, "user-data")
		c.cloud_init.network_config = _str(cloud_init, "network-config")
	c.extra_ppas = [parse_ppa(p) for p in _list(config, "extra-ppas", w)]
	c.extra_packages = [_str(p, "name") for p in _list(config, "extra-packages", w)]
	c.extra_snaps = [parse_snap(s) for s in _list(config, "extra-snaps", w)]
	c.fstab = [parse_fstab(f) for f in _list(config, "fstab", w)]
	manual = _section(config, "manual", w)
	if manual is not None: c.manual = parse_manual(manual)
	return c


def parse_volume_artifacts(items: list) -> list[VolumeArtifact]:
	ret = []
	for item in items:
		a = VolumeArtifact()
		a.name = _str(item, "name")
		a.volume = _str(item, "volume")
		if not a.name: raise ConfigError("image artifacts require a name")
		ret.append(a)
	return ret


def parse_artifacts(config: dict) -> Artifacts:
	a = Artifacts()
	a.img = parse_volume_artifacts(_list(config, "img", "artifacts:"))
	a.qcow2 = parse_volume_artifacts(_list(config, "qcow2", "artifacts:"))
	manifest = _section(config, "manifest", "artifacts:")
	if manifest is not None: a.manifest = _str(manifest, "name")
	filelist = _section(config, "filelist", "artifacts:")
	if filelist is not None: a.filelist = _str(filelist, "name")
	tarball = _section(config, "rootfs-tarball", "artifacts:")
	if tarball is not None:
		a.rootfs_tarball = RootfsTarball()
		a.rootfs_tarball.name = _str(tarball, "name")
		a.rootfs_tarball.compression = _str(tarball, "compression", "uncompressed")
		if a.rootfs_tarball.compression not in COMPRESSIONS:
			raise ConfigError(
				f"artifacts:rootfs-tarball:compression must be one of {', '.join(COMPRESSIONS)}"
			)
	return a


def parse_definition(config: dict, folder: str = "") -> ImageDefinition:
	"""
	Build an image definition from its parsed yaml, applying defaults and
	rejecting inconsistent definitions
	"""
	d = ImageDefinition()
	d.folder = folder
	d.name = _str(config, "name")
	d.display_name = _str(config, "display-name")
	d.revision = int(config.get("revision") or 0)
	d.architecture = _str(config, "architecture")
	d.series = _str(config, "series")
	d.kernel = _str(config, "kernel")
	d.model_assertion = _str(config, "model-assertion")
	d.image_class = _str(config, "class")
	for key, value in [
		("name", d.name),
		("architecture", d.architecture),
		("series", d.series),
	]:
		if not value: raise ConfigError(f"image definition requires {key}")
	gadget = _section(config, "gadget", "")
	if gadget is not None: d.gadget = parse_gadget(gadget)
	rootfs = _section(config, "rootfs", "")
	if rootfs is None: raise ConfigError("image definition requires rootfs")
	d.rootfs = parse_rootfs(rootfs)
	customization = _section(config, "customization", "")
	if customization is not None:
		d.customization = parse_customization(customization)
	d.artifacts = parse_artifacts(_section(config, "artifacts", "") or {})
	if d.gadget is None and d.artifacts.has_disk():
		key = "img" if len(d.artifacts.img) > 0 else "qcow2"
		raise ConfigError(f"Key {key} cannot be used without key gadget:")
	return d


def load_definition(path: str) -> ImageDefinition:
	config = load_config_file(path)
	definition = parse_definition(config, os.path.dirname(os.path.abspath(path)))
	log.debug(f"loaded image definition {definition.name} from {path}")
	return definition
