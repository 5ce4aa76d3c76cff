from typing import Self
from logging import getLogger
from ubuntu_image.lib.utils import MiB
from ubuntu_image.lib.serializable import SerializableDict
log = getLogger(__name__)


ROLE_MBR = "mbr"
ROLE_SYSTEM_BOOT = "system-boot"
ROLE_SYSTEM_SEED = "system-seed"
ROLE_SYSTEM_SEED_NULL = "system-seed-null"
ROLE_SYSTEM_DATA = "system-data"
ROLE_SYSTEM_SAVE = "system-save"
ROLES = [
	"",
	ROLE_MBR,
	ROLE_SYSTEM_BOOT,
	ROLE_SYSTEM_SEED,
	ROLE_SYSTEM_SEED_NULL,
	ROLE_SYSTEM_DATA,
	ROLE_SYSTEM_SAVE,
]

LABEL_SYSTEM_BOOT = "system-boot"

SCHEMA_GPT = "gpt"
SCHEMA_MBR = "mbr"
SCHEMA_EMMC = "emmc"
SCHEMAS = [SCHEMA_GPT, SCHEMA_MBR, SCHEMA_EMMC]

# structures with an implicit offset never start inside the first MiB
NON_MBR_START_OFFSET = 1 * MiB


class StructureContent(SerializableDict):
	"""
	Source/target pair for filesystem structures, image/offset for raw ones
	"""
	source: str
	target: str
	image: str
	offset: int | None
	size: int | None

	def __init__(self, o: dict = None):
		self.source = ""
		self.target = ""
		self.image = ""
		self.offset = None
		self.size = None
		super().__init__(o)


class OffsetWrite(SerializableDict):
	"""
	Location where the start offset of a structure is written
	"""
	relative_to: str
	offset: int

	def __init__(self, o: dict = None):
		self.relative_to = ""
		self.offset = 0
		super().__init__(o)


class Structure(SerializableDict):
	name: str
	label: str
	offset: int | None
	offset_write: OffsetWrite | None
	size: int
	min_size: int
	type: str
	role: str
	filesystem: str
	id: str
	content: list[StructureContent]

	@property
	def real_size(self) -> int:
		return self.size if self.size else self.min_size

	def is_partition(self) -> bool:
		"""
		Bare blobs and the MBR boot code do not get a partition table entry
		"""
		return self.type != "bare" and self.role != ROLE_MBR

	def has_filesystem(self) -> bool:
		return self.filesystem not in ["", "none"]

	def is_rootfs(self) -> bool:
		return self.role == ROLE_SYSTEM_DATA

	def is_system_boot(self) -> bool:
		return self.role == ROLE_SYSTEM_BOOT or self.label == LABEL_SYSTEM_BOOT

	def should_skip(self, seeded: bool) -> bool:
		"""
		Seeded builds leave boot, data and save partitions to the installer
		"""
		if not seeded: return False
		if self.role in [ROLE_SYSTEM_BOOT, ROLE_SYSTEM_DATA, ROLE_SYSTEM_SAVE]:
			return True
		return self.label == LABEL_SYSTEM_BOOT

	def type_for(self, schema: str) -> str:
		"""
		Pick the type code for a schema out of a "<mbr>,<gpt>" pair
		"""
		if "," not in self.type: return self.type
		types = self.type.split(",")
		return types[1] if schema == SCHEMA_GPT else types[0]

	def display_name(self, idx: int) -> str:
		if self.name: return self.name
		if self.label: return self.label
		return f"#{idx}"

	def from_dict(self, o: dict) -> Self:
		super().from_dict(o)
		if isinstance(self.offset_write, dict):
			self.offset_write = OffsetWrite(self.offset_write)
		self.content = [
			c if isinstance(c, StructureContent) else StructureContent(c)
			for c in self.content
		]
		return self

	def __init__(self, o: dict = None):
		self.name = ""
		self.label = ""
		self.offset = None
		self.offset_write = None
		self.size = 0
		self.min_size = 0
		self.type = ""
		self.role = ""
		self.filesystem = ""
		self.id = ""
		self.content = []
		super().__init__(o)


class Volume(SerializableDict):
	name: str
	schema: str
	bootloader: str
	id: str
	structures: list[Structure]

	def start_offsets(self) -> list[int]:
		"""
		Byte offset of every structure, unset offsets follow the previous one
		"""
		ret: list[int] = []
		end = 0
		for structure in self.structures:
			if structure.offset is not None:
				start = structure.offset
			else:
				start = end
				if structure.role != ROLE_MBR and start < NON_MBR_START_OFFSET:
					start = NON_MBR_START_OFFSET
			ret.append(start)
			end = start + structure.real_size
		return ret

	def farthest_offset(self) -> int | None:
		"""
		End of the last structure, None if any offset is implicit
		"""
		farthest = 0
		for structure in self.structures:
			if structure.offset is None: return None
			farthest = max(farthest, structure.offset + structure.real_size)
		return farthest

	def find_structure(self, name: str) -> tuple[int, Structure] | None:
		return next((
			(idx, s) for idx, s in enumerate(self.structures)
			if s.name == name
		), None)

	def has_role(self, role: str) -> bool:
		return any(s.role == role for s in self.structures)

	def from_dict(self, o: dict) -> Self:
		super().from_dict(o)
		self.structures = [
			s if isinstance(s, Structure) else Structure(s)
			for s in self.structures
		]
		return self

	def __init__(self, o: dict = None):
		self.name = ""
		self.schema = SCHEMA_GPT
		self.bootloader = ""
		self.id = ""
		self.structures = []
		super().__init__(o)


class GadgetInfo(SerializableDict):
	volumes: dict[str, Volume]
	volume_order: list[str]

	def ordered_volumes(self) -> list[Volume]:
		return [self.volumes[name] for name in self.volume_order]

	def rootfs_volume(self) -> Volume | None:
		return next((
			v for v in self.ordered_volumes()
			if v.has_role(ROLE_SYSTEM_DATA)
		), None)

	def from_dict(self, o: dict) -> Self:
		super().from_dict(o)
		self.volumes = {
			name: v if isinstance(v, Volume) else Volume(v)
			for name, v in self.volumes.items()
		}
		return self

	def __init__(self, o: dict = None):
		self.volumes = {}
		self.volume_order = []
		super().__init__(o)
