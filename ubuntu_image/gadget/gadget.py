from logging import getLogger
from ubuntu_image.lib.config import ConfigError, load_config_file
from ubuntu_image.lib.utils import MiB, size_to_bytes
from ubuntu_image.gadget.structure import (
	GadgetInfo, Volume, Structure, StructureContent, OffsetWrite,
	ROLES, ROLE_MBR, ROLE_SYSTEM_DATA, ROLE_SYSTEM_SEED,
	LABEL_SYSTEM_BOOT, SCHEMAS,
)
log = getLogger(__name__)


ROOTFS_TYPE = "83,0FC63DAF-8483-4772-8E79-3D69D8477DE4"


def _size(value, what: str) -> int:
	try: return size_to_bytes(value)
	except (TypeError, ValueError) as e:
		raise ConfigError(f"invalid {what} {value!r}: {e}") from e


def parse_offset_write(value: str | int) -> OffsetWrite:
	"""
	Parse "[structure-name+]offset"
	parse_offset_write("mbr+92") = OffsetWrite(relative_to="mbr", offset=92)
	"""
	ow = OffsetWrite()
	if type(value) is str and "+" in value:
		name, off = value.rsplit("+", 1)
		ow.relative_to = name
		ow.offset = _size(off, "offset-write")
	else:
		ow.offset = _size(value, "offset-write")
	return ow


def parse_content(config: dict) -> StructureContent:
	content = StructureContent()
	if type(config) is not dict:
		raise ConfigError("structure content must be a mapping")
	if "source" in config: content.source = str(config["source"])
	if "target" in config: content.target = str(config["target"])
	if "image" in config: content.image = str(config["image"])
	if "offset" in config: content.offset = _size(config["offset"], "content offset")
	if "size" in config: content.size = _size(config["size"], "content size")
	if content.source and content.image:
		raise ConfigError("content cannot have both source and image")
	return content


def parse_structure(volume: str, idx: int, config: dict) -> Structure:
	where = f"volumes:{volume}:structure:{idx}"
	if type(config) is not dict:
		raise ConfigError(f"{where} must be a mapping")
	s = Structure()
	if "name" in config: s.name = str(config["name"])
	if "filesystem-label" in config: s.label = str(config["filesystem-label"])
	if "offset" in config: s.offset = _size(config["offset"], f"{where}:offset")
	if "offset-write" in config:
		s.offset_write = parse_offset_write(config["offset-write"])
	if "size" in config: s.size = _size(config["size"], f"{where}:size")
	if "min-size" in config: s.min_size = _size(config["min-size"], f"{where}:min-size")
	if "type" in config: s.type = str(config["type"])
	if "role" in config: s.role = str(config["role"])
	if "filesystem" in config: s.filesystem = str(config["filesystem"])
	if "id" in config: s.id = str(config["id"])
	s.content = [parse_content(c) for c in config.get("content") or []]
	if s.size == 0 and s.min_size == 0:
		raise ConfigError(f"{where}: missing size")
	if len(s.type) == 0:
		raise ConfigError(f"{where}: missing type")
	if s.type == ROLE_MBR:
		if s.role not in ["", ROLE_MBR]:
			raise ConfigError(f"{where}: type mbr conflicts with role {s.role}")
		s.role = ROLE_MBR
	if s.role not in ROLES:
		raise ConfigError(f"{where}: unsupported role {s.role}")
	if s.role == ROLE_MBR:
		if s.offset not in [None, 0]:
			raise ConfigError(f"{where}: mbr structure must start at offset 0")
		s.offset = 0
		if s.real_size > 446:
			raise ConfigError(f"{where}: mbr structure is larger than 446 bytes")
	return s


def parse_volume(name: str, config: dict) -> Volume:
	if type(config) is not dict:
		raise ConfigError(f"volume {name} must be a mapping")
	v = Volume()
	v.name = name
	if "schema" in config: v.schema = str(config["schema"])
	if "bootloader" in config: v.bootloader = str(config["bootloader"])
	if "id" in config: v.id = str(config["id"])
	if v.schema not in SCHEMAS:
		raise ConfigError(f"volume {name}: unsupported schema {v.schema}")
	structures = config.get("structure") or []
	if type(structures) is not list:
		raise ConfigError(f"volume {name}: structure must be a list")
	v.structures = [
		parse_structure(name, idx, s)
		for idx, s in enumerate(structures)
	]
	return v


def load_gadget_yaml(path: str) -> GadgetInfo:
	"""
	Load meta/gadget.yaml, volumes keep the order of the document
	"""
	config = load_config_file(path)
	volumes = config.get("volumes")
	if type(volumes) is not dict or len(volumes) == 0:
		raise ConfigError(f"no volumes defined in {path}")
	info = GadgetInfo()
	for name, volume in volumes.items():
		info.volumes[str(name)] = parse_volume(str(name), volume)
		info.volume_order.append(str(name))
	log.debug(f"loaded volumes {info.volume_order} from {path}")
	return info


def post_process(info: GadgetInfo, rootfs_source: str) -> bool:
	"""
	Validate and complete a loaded gadget, returns whether the build is seeded
	rootfs_source replaces the "rootfs:" prefix of system-boot content
	"""
	seeded = False
	rootfs_seen = False
	farthest: int | None = 0
	for name in info.volume_order:
		volume = info.volumes[name]
		for idx, s in enumerate(volume.structures):
			if s.role == "" and s.label == LABEL_SYSTEM_BOOT:
				log.warning(
					f"volumes:{name}:structure:{idx}:filesystem_label "
					"used for defining partition roles; use role instead"
				)
			elif s.role == ROLE_SYSTEM_DATA:
				rootfs_seen = True
			elif s.role == ROLE_SYSTEM_SEED:
				seeded = True
				if not s.label: s.label = "ubuntu-seed"
			for content in s.content:
				if "../" in content.source:
					raise ConfigError(
						f"filesystem content source \"{content.source}\" contains \"../\". "
						"This is disallowed for security purposes"
					)
			if s.is_system_boot():
				for content in s.content:
					content.source = content.source.replace("rootfs:", rootfs_source)
		end = volume.farthest_offset()
		if end is None or farthest is None: farthest = None
		else: farthest = max(farthest, end)

	if farthest is not None and not rootfs_seen and len(info.volumes) == 1:
		volume = info.volumes[info.volume_order[-1]]
		log.debug(f"adding rootfs structure at offset {farthest} to volume {volume.name}")
		rootfs = Structure()
		rootfs.label = "writable"
		rootfs.offset = farthest
		rootfs.type = ROOTFS_TYPE
		rootfs.role = ROLE_SYSTEM_DATA
		rootfs.filesystem = "ext4"
		volume.structures.append(rootfs)
	return seeded


def image_sizes_minimum(info: GadgetInfo) -> dict[str, int]:
	"""
	Smallest image size that holds every structure of each volume plus slack
	for the partition tables
	"""
	ret = {}
	for volume in info.ordered_volumes():
		offsets = volume.start_offsets()
		farthest = max((
			start + s.real_size
			for start, s in zip(offsets, volume.structures)
		), default=0)
		ret[volume.name] = (farthest // MiB + 17) * MiB
	return ret


def parse_image_sizes(value: str, info: GadgetInfo) -> dict[str, int]:
	"""
	Parse --image-size, either one size for every volume or a comma
	separated list of <volume-name|volume-index>:<size>
	"""
	ret: dict[str, int] = {}
	if not value: return ret
	if ":" not in value:
		size = _size(value, "--image-size")
		for name in info.volume_order: ret[name] = size
		return ret
	for item in value.split(","):
		parts = item.split(":")
		if len(parts) != 2:
			raise ConfigError(f"Argument to --image-size {item} is not in the correct format")
		key, size = parts[0], _size(parts[1], "--image-size")
		if key.isdigit():
			idx = int(key)
			if idx >= len(info.volume_order):
				raise ConfigError(f"Volume index {idx} is out of range")
			ret[info.volume_order[idx]] = size
		elif key in info.volumes:
			ret[key] = size
		else:
			raise ConfigError(f"Volume {key} does not exist in gadget.yaml")
	return ret


def handle_image_sizes(info: GadgetInfo, requested: dict[str, int]) -> dict[str, int]:
	"""
	Merge requested image sizes with the minimum each volume needs
	"""
	ret = {}
	for name, minimum in image_sizes_minimum(info).items():
		size = requested.get(name)
		if size is None:
			ret[name] = minimum
		elif size < minimum:
			log.warning(
				"ignoring image size smaller than minimum required size: "
				f"vol:{name} {size} < {minimum}"
			)
			ret[name] = minimum
		else:
			ret[name] = size
	return ret

