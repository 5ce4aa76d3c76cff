import os
from logging import getLogger
from ubuntu_image.lib.cpu import cpu_arch_get
from ubuntu_image.lib.config import ConfigError
from ubuntu_image.lib.context import BuildContext
from ubuntu_image.machine.options import SnapOptions
from ubuntu_image.machine.state import Variant, Step
from ubuntu_image.build import common, snap
log = getLogger(__name__)


class SnapVariant(Variant):
	"""
	Image of an Ubuntu Core system described by a model assertion
	"""
	name = "snap"
	options: SnapOptions

	def validate(self, ctx: BuildContext):
		opts = self.options
		if not opts.model_assertion:
			raise ConfigError("a model assertion is required for snap builds")
		if not os.path.isfile(opts.model_assertion):
			raise ConfigError(f"model assertion {opts.model_assertion} not found")
		if opts.cloud_init and not os.path.isfile(opts.cloud_init):
			raise ConfigError(f"cloud-init user data {opts.cloud_init} not found")

	def prepare(self, ctx: BuildContext):
		if not ctx.arch: ctx.arch = cpu_arch_get()

	def calculate_steps(self, ctx: BuildContext) -> list[Step]:
		return [
			Step("make_temporary_directories", common.make_temporary_directories),
			Step("prepare_image", snap.prepare_image),
			Step("load_gadget_yaml", common.load_gadget_yaml),
			Step("set_artifact_names", common.set_artifact_names),
			Step("populate_rootfs_contents", snap.populate_rootfs_contents),
			Step("generate_disk_info", common.generate_disk_info),
			Step("calculate_rootfs_size", common.calculate_rootfs_size),
			Step("populate_bootfs_contents", common.populate_bootfs_contents),
			Step("populate_prepare_partitions", common.populate_prepare_partitions),
			Step("make_disk", common.make_disk),
			Step("generate_snap_manifest", snap.generate_snap_manifest),
		]

	def __init__(self, options: SnapOptions = None):
		self.options = options or SnapOptions()
