import os
from logging import getLogger
from ubuntu_image.lib.cpu import cpu_arch_get, cpu_arch_compatible
from ubuntu_image.lib.config import ConfigError
from ubuntu_image.lib.context import BuildContext
from ubuntu_image.classic.definition import ImageDefinition, load_definition
from ubuntu_image.machine.options import ClassicOptions
from ubuntu_image.machine.state import Variant, Step
from ubuntu_image.build import common, classic, customize, artifacts, bootloader
log = getLogger(__name__)


class ClassicVariant(Variant):
	"""
	Image of a classic Ubuntu system described by an image definition
	"""
	name = "classic"
	options: ClassicOptions
	definition: ImageDefinition | None

	def validate(self, ctx: BuildContext):
		path = self.options.image_definition
		if not path:
			raise ConfigError("an image definition is required for classic builds")
		if not os.path.isfile(path):
			raise ConfigError(f"image definition {path} not found")

	def prepare(self, ctx: BuildContext):
		self.definition = load_definition(self.options.image_definition)
		ctx.definition = self.definition
		ctx.arch = self.definition.architecture
		if not cpu_arch_compatible(ctx.arch): log.warning(
			f"current cpu arch {cpu_arch_get()} is not compatible to {ctx.arch}, "
			"you may need qemu-user-static-binfmt to run incompatible executables"
		)

	def gadget_steps(self) -> list[Step]:
		steps = []
		if self.definition.gadget.type in ["git", "directory"]:
			steps.append(Step("build_gadget_tree", classic.build_gadget_tree))
		steps.append(Step("prepare_gadget_tree", classic.prepare_gadget_tree))
		steps.append(Step("load_gadget_yaml", common.load_gadget_yaml))
		return steps

	def package_steps(self) -> list[Step]:
		install = Step("install_packages", classic.install_packages)
		custom = self.definition.customization
		if custom is None or len(custom.extra_ppas) == 0:
			return [install]
		return [
			Step("add_extra_ppas", classic.add_extra_ppas),
			install,
			Step("clean_extra_ppas", classic.clean_extra_ppas),
		]

	def snap_steps(self) -> list[Step]:
		return [
			Step("prepare_classic_image", classic.prepare_classic_image),
			Step("preseed_classic_image", classic.preseed_classic_image),
		]

	def rootfs_steps(self) -> list[Step]:
		rootfs = self.definition.rootfs
		custom = self.definition.customization
		if rootfs.tarball is not None:
			steps = [Step("extract_rootfs_tar", classic.extract_rootfs_tar)]
			if custom is None: return steps
			if len(custom.extra_ppas) > 0 or len(custom.extra_packages) > 0:
				steps.extend(self.package_steps())
			if len(custom.extra_snaps) > 0:
				steps.extend(self.snap_steps())
			return steps
		if rootfs.seed is not None:
			return [
				Step("germinate", classic.germinate),
				Step("create_chroot", classic.create_chroot),
			] + self.package_steps() + self.snap_steps()
		return [Step("build_rootfs_from_tasks", classic.build_rootfs_from_tasks)]

	def customization_steps(self) -> list[Step]:
		custom = self.definition.customization
		if custom is None: return []
		steps = []
		if custom.cloud_init is not None:
			steps.append(Step("customize_cloud_init", customize.customize_cloud_init))
		if len(custom.fstab) > 0:
			steps.append(Step("customize_fstab", customize.customize_fstab))
		if custom.manual is not None:
			steps.append(Step("perform_manual_customization", customize.perform_manual_customization))
		return steps

	def image_steps(self, ctx: BuildContext) -> list[Step]:
		defn = self.definition
		steps = []
		if defn.gadget is not None:
			steps.extend([
				Step("calculate_rootfs_size", common.calculate_rootfs_size),
				Step("populate_bootfs_contents", common.populate_bootfs_contents),
				Step("populate_prepare_partitions", common.populate_prepare_partitions),
			])
			if defn.artifacts.has_disk():
				steps.extend([
					Step("make_disk", common.make_disk),
					Step("update_bootloader", bootloader.update_bootloader),
				])
		if len(defn.artifacts.qcow2) > 0:
			steps.append(Step("make_qcow2_image", artifacts.make_qcow2_image))
		if defn.artifacts.manifest:
			steps.append(Step("generate_package_manifest", artifacts.generate_package_manifest))
		if defn.artifacts.filelist:
			steps.append(Step("generate_filelist", artifacts.generate_filelist))
		if defn.artifacts.rootfs_tarball is not None:
			steps.append(Step("generate_rootfs_tarball", artifacts.generate_rootfs_tarball))
		return steps

	def calculate_steps(self, ctx: BuildContext) -> list[Step]:
		defn = self.definition
		steps = [
			Step("make_temporary_directories", common.make_temporary_directories),
			Step("determine_output_directory", classic.determine_output_directory),
		]
		if defn.gadget is not None:
			steps.extend(self.gadget_steps())
		if defn.artifacts.has_disk():
			steps.append(Step("verify_artifact_names", classic.verify_artifact_names))
		steps.extend(self.rootfs_steps())
		steps.append(Step("clean_rootfs", customize.clean_rootfs))
		steps.append(Step("customize_sources_list", classic.customize_sources_list))
		steps.extend(self.customization_steps())
		steps.append(Step("set_default_locale", customize.set_default_locale))
		steps.append(Step("populate_rootfs_contents", classic.populate_rootfs_contents))
		if ctx.common.disk_info:
			steps.append(Step("generate_disk_info", common.generate_disk_info))
		steps.extend(self.image_steps(ctx))
		steps.append(Step("finish", common.finish))
		return steps

	def __init__(self, options: ClassicOptions = None):
		self.options = options or ClassicOptions()
		self.definition = None
