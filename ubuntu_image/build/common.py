import os
import math
import shutil
from logging import getLogger
from ubuntu_image.lib import utils
from ubuntu_image.lib.config import ConfigError
from ubuntu_image.lib.context import BuildContext
from ubuntu_image.gadget import gadget
from ubuntu_image.gadget.structure import Structure, ROLE_SYSTEM_SEED, SCHEMA_EMMC
from ubuntu_image.disk.image import make_volume_image
from ubuntu_image.disk.filesystem import create_filesystem, create_raw_image
log = getLogger(__name__)


# ext4 metadata takes a little over 7MiB on a 100MiB filesystem
ROOTFS_PADDING = 8 * utils.MiB


def make_temporary_directories(ctx: BuildContext):
	for path in [
		ctx.work,
		ctx.get_rootfs(),
		ctx.get_unpack(),
		ctx.get_volumes(),
		ctx.get_scratch(),
	]:
		if not os.path.exists(path):
			log.debug(f"create folder {path}")
			os.makedirs(path, mode=0o0755)


def load_gadget_yaml(ctx: BuildContext):
	"""
	Load gadget.yaml, validate it and work out per volume image sizes
	"""
	if not ctx.yaml_path:
		raise RuntimeError("no gadget.yaml found for this build")
	shutil.copyfile(ctx.yaml_path, os.path.join(ctx.work, "gadget.yaml"))
	info = gadget.load_gadget_yaml(ctx.yaml_path)
	rootfs = os.path.relpath(ctx.get_rootfs(), ctx.get_gadget())
	ctx.is_seeded = gadget.post_process(info, rootfs)
	ctx.image_sizes = gadget.parse_image_sizes(ctx.common.image_size, info)
	ctx.gadget = info


def set_artifact_names(ctx: BuildContext):
	for name in ctx.gadget.volume_order:
		ctx.volume_names[name] = f"{name}.img"


def run_hooks(ctx: BuildContext, name: str, env_name: str, value: str):
	"""
	Run every executable in <hooks-directory>/<name>.d in name order
	"""
	for folder in ctx.common.hooks_directories:
		hooks = os.path.join(folder, f"{name}.d")
		if not os.path.isdir(hooks): continue
		for hook in sorted(os.listdir(hooks)):
			path = os.path.join(hooks, hook)
			if not os.path.isfile(path) or not os.access(path, os.X_OK):
				log.debug(f"skip non executable hook {path}")
				continue
			log.info(f"running hook {path}")
			env = os.environ.copy()
			env[env_name] = value
			ret = ctx.run_external([path], env=env)
			if ret != 0: raise OSError(f"hook {path} failed with {ret}")


def populate_rootfs_contents_hooks(ctx: BuildContext):
	if ctx.is_seeded:
		log.debug("building from a seeded gadget, skipping post-populate-rootfs hooks")
		return
	run_hooks(
		ctx, "post-populate-rootfs",
		"UBUNTU_IMAGE_HOOK_ROOTFS", ctx.get_rootfs(),
	)


def generate_disk_info(ctx: BuildContext):
	if not ctx.common.disk_info: return
	folder = os.path.join(ctx.get_rootfs(), ".disk")
	os.makedirs(folder, mode=0o0755, exist_ok=True)
	shutil.copyfile(ctx.common.disk_info, os.path.join(folder, "info"))
	log.info(f"copied disk info {ctx.common.disk_info}")


def calculate_rootfs_size(ctx: BuildContext):
	"""
	Size the rootfs from its content with room for filesystem metadata
	"""
	usage = utils.disk_usage(ctx.get_rootfs())
	size = math.ceil(usage * 1.5) + ROOTFS_PADDING
	size = utils.round_up(size, ctx.common.sector_size)
	ctx.rootfs_size = size
	log.info(f"rootfs size is {size} bytes for {usage} bytes of content")
	for volume in ctx.gadget.ordered_volumes():
		for structure in volume.structures:
			if not structure.is_rootfs(): continue
			if structure.size == 0:
				structure.size = max(size, structure.min_size)
			elif structure.size < size:
				log.warning(
					f"rootfs structure of volume {volume.name} is {structure.size} "
					f"bytes, content needs {size} bytes"
				)


def copy_content(gadget_dir: str, source: str, target: str, dest: str):
	"""
	Copy one gadget content entry into the folder of a structure
	A trailing slash on source copies the folder content rather than the folder
	"""
	src = os.path.join(gadget_dir, source)
	dst = os.path.join(dest, target.lstrip("/"))
	if not os.path.exists(src):
		raise ConfigError(f"gadget content {source} not found")
	if source.endswith("/"):
		utils.copy_tree(src, dst)
	elif os.path.isdir(src):
		if target.endswith("/") or not target:
			dst = os.path.join(dst, os.path.basename(src))
		utils.copy_tree(src, dst)
	else:
		if target.endswith("/") or not target:
			os.makedirs(dst, mode=0o0755, exist_ok=True)
			dst = os.path.join(dst, os.path.basename(src))
		else:
			os.makedirs(os.path.dirname(dst), mode=0o0755, exist_ok=True)
		log.debug(f"copying {src} to {dst}")
		shutil.copy2(src, dst)


def move_boot_assets(ctx: BuildContext, bootloader: str, dest: str):
	"""
	Move the bootloader assets snap prepare-image left under boot/ to where
	signed bootloaders expect them
	"""
	image = os.path.join(ctx.get_unpack(), "image", "boot")
	match bootloader:
		case "u-boot": src, dst = os.path.join(image, "uboot"), dest
		case "piboot": src, dst = os.path.join(image, "piboot"), dest
		case "grub": src, dst = os.path.join(image, "grub"), os.path.join(dest, "EFI", "ubuntu")
		case _: return
	if not os.path.isdir(src): return
	os.makedirs(dst, mode=0o0755, exist_ok=True)
	for name in os.listdir(src):
		os.rename(os.path.join(src, name), os.path.join(dst, name))
	log.debug(f"moved boot assets from {src} to {dst}")


def structure_folder(ctx: BuildContext, volume: str, idx: int, structure: Structure) -> str:
	if structure.is_rootfs() or structure.role == ROLE_SYSTEM_SEED:
		return ctx.get_rootfs()
	return os.path.join(ctx.get_volumes(), volume, f"part{idx}")


def populate_bootfs_contents(ctx: BuildContext):
	"""
	Lay out gadget content for every structure holding a filesystem
	"""
	for volume in ctx.gadget.ordered_volumes():
		for idx, structure in enumerate(volume.structures):
			if not structure.has_filesystem(): continue
			if structure.is_rootfs(): continue
			if structure.should_skip(ctx.is_seeded): continue
			folder = structure_folder(ctx, volume.name, idx, structure)
			os.makedirs(folder, mode=0o0755, exist_ok=True)
			if not ctx.is_seeded and structure.is_system_boot():
				move_boot_assets(ctx, volume.bootloader, folder)
			for content in structure.content:
				if not content.source: continue
				copy_content(ctx.get_gadget(), content.source, content.target, folder)


def populate_prepare_partitions(ctx: BuildContext):
	"""
	Create the image of every structure, filesystems or raw blobs
	"""
	for volume in ctx.gadget.ordered_volumes():
		folder = os.path.join(ctx.get_volumes(), volume.name)
		os.makedirs(folder, mode=0o0755, exist_ok=True)
		for idx, structure in enumerate(volume.structures):
			if structure.should_skip(ctx.is_seeded): continue
			output = os.path.join(folder, f"part{idx}.img")
			size = structure.real_size
			if size == 0: raise RuntimeError(
				f"structure {structure.display_name(idx)} of volume "
				f"{volume.name} has no size"
			)
			if structure.has_filesystem():
				content = structure_folder(ctx, volume.name, idx, structure)
				create_filesystem(ctx, structure, content, output, size)
			else:
				create_raw_image(structure, ctx.get_gadget(), output, size)


def make_disk(ctx: BuildContext):
	"""
	Assemble the image of every volume, sizes are final once the rootfs is
	"""
	output = ctx.get_output()
	os.makedirs(output, mode=0o0755, exist_ok=True)
	sizes = gadget.handle_image_sizes(ctx.gadget, ctx.image_sizes)
	rootfs_volume = ctx.gadget.rootfs_volume()
	for volume in ctx.gadget.ordered_volumes():
		if volume.schema == SCHEMA_EMMC:
			log.info(f"skipping emmc volume {volume.name}")
			continue
		if volume.name not in ctx.volume_names: continue
		path = os.path.join(output, ctx.volume_names[volume.name])
		table, rootfs = make_volume_image(
			path, volume, ctx.get_volumes(),
			sizes[volume.name], ctx.common.sector_size, ctx.is_seeded,
		)
		ctx.partition_tables[volume.name] = table
		if rootfs_volume is not None and volume.name == rootfs_volume.name:
			ctx.rootfs_part_num = rootfs


def finish(ctx: BuildContext):
	log.info(f"build finished, artifacts are in {ctx.get_output()}")
