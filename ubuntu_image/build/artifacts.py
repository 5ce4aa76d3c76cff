import os
from logging import getLogger
from ubuntu_image.lib.archive import create_archive
from ubuntu_image.lib.context import BuildContext
from ubuntu_image.build.classic import definition, call
log = getLogger(__name__)


def chroot_output(ctx: BuildContext, cmd: list[str]) -> str:
	ret, out = ctx.run_external(["chroot", ctx.get_rootfs()] + cmd, want_stdout=True)
	if ret != 0: raise OSError(f"{cmd[0]} in rootfs failed with {ret}")
	return out


def write_output(ctx: BuildContext, name: str, content: str) -> str:
	path = os.path.join(ctx.get_output(), name)
	with open(path, "w") as f:
		f.write(content)
	log.info(f"wrote {path}")
	return path


def generate_package_manifest(ctx: BuildContext):
	out = chroot_output(ctx, ["dpkg-query", "-W", "--showformat=${Package} ${Version}\n"])
	write_output(ctx, definition(ctx).artifacts.manifest, out)


def generate_filelist(ctx: BuildContext):
	out = chroot_output(ctx, ["find", "-xdev"])
	write_output(ctx, definition(ctx).artifacts.filelist, out)


def generate_rootfs_tarball(ctx: BuildContext):
	tarball = definition(ctx).artifacts.rootfs_tarball
	output = os.path.join(ctx.get_output(), tarball.name)
	create_archive(ctx.get_rootfs(), output, tarball.compression)


def make_qcow2_image(ctx: BuildContext):
	"""
	Convert raw volume images into qcow2 images
	"""
	output = ctx.get_output()
	for qcow2 in definition(ctx).artifacts.qcow2:
		volume = qcow2.volume or ctx.gadget.volume_order[0]
		backing = os.path.join(output, ctx.volume_names[volume])
		result = os.path.join(output, qcow2.name)
		call(ctx, [
			"qemu-img", "convert", "-c",
			"-O", "qcow2",
			"-o", "compat=0.10",
			backing, result,
		])
		log.info(f"created qcow2 image {result}")
