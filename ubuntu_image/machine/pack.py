import os
from logging import getLogger
from ubuntu_image.lib.config import ConfigError
from ubuntu_image.lib.context import BuildContext
from ubuntu_image.machine.options import PackOptions
from ubuntu_image.machine.state import Variant, Step
from ubuntu_image.build import common, pack, bootloader
log = getLogger(__name__)


class PackVariant(Variant):
	"""
	Disk image from an already prepared gadget tree and rootfs
	"""
	name = "pack"
	options: PackOptions

	def validate(self, ctx: BuildContext):
		for key, path in [
			("gadget", self.options.gadget_dir),
			("rootfs", self.options.rootfs_dir),
		]:
			if not path:
				raise ConfigError(f"a {key} directory is required for pack builds")
			if not os.path.isdir(path):
				raise ConfigError(f"{key} directory {path} not found")
		yaml = os.path.join(self.options.gadget_dir, "meta", "gadget.yaml")
		if not os.path.isfile(yaml):
			raise ConfigError(f"no gadget.yaml found in {self.options.gadget_dir}")

	def prepare(self, ctx: BuildContext):
		ctx.arch = self.options.architecture

	def calculate_steps(self, ctx: BuildContext) -> list[Step]:
		return [
			Step("make_temporary_directories", common.make_temporary_directories),
			Step("populate_temporary_directories", pack.populate_temporary_directories),
			Step("load_gadget_yaml", common.load_gadget_yaml),
			Step("set_artifact_names", common.set_artifact_names),
			Step("calculate_rootfs_size", common.calculate_rootfs_size),
			Step("populate_bootfs_contents", common.populate_bootfs_contents),
			Step("populate_prepare_partitions", common.populate_prepare_partitions),
			Step("make_disk", common.make_disk),
			Step("update_bootloader", bootloader.update_bootloader),
		]

	def __init__(self, options: PackOptions = None):
		self.options = options or PackOptions()
