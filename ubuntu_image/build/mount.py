import os
from logging import getLogger
from ubuntu_image.lib.context import BuildContext
log = getLogger(__name__)


def mounts_under(ctx: BuildContext, root: str) -> list:
	real = os.path.realpath(root)
	return [
		mnt for mnt in ctx.mounted
		if mnt.target == real or mnt.target.startswith(real + os.sep)
	]


def undo_mounts(ctx: BuildContext, root: str):
	"""
	Clean up mount points under root, newest first
	"""
	mnts = mounts_under(ctx, root)
	if len(mnts) <= 0: return
	log.debug(f"undo mount points under {root}")
	for mnt in mnts:
		mnt.umount(ctx)
		ctx.mounted.remove(mnt)
	if any(os.path.ismount(mnt.target) for mnt in mnts):
		raise RuntimeError(f"mount points under {root} not cleaned up")


def init_mount(ctx: BuildContext, root: str):
	"""
	Setup the pseudo filesystems needed to run programs inside a chroot
	"""
	def root_mount(source, target, fstype, options):
		real = os.path.realpath(os.path.join(root, target))
		# ensure mount point is clean
		if any(mnt.target == real for mnt in ctx.mounted):
			raise RuntimeError(f"{real} is already mounted")
		ctx.mount(source, real, fstype, options)
	try:
		root_mount("proc-build", "proc", "proc", "nosuid,noexec,nodev")
		root_mount("sysfs-build", "sys", "sysfs", "nosuid,noexec,nodev,ro")
		root_mount("devtmpfs-build", "dev", "devtmpfs", "mode=0755,nosuid")
		root_mount("devpts-build", "dev/pts", "devpts", "nodev,nosuid")
		root_mount("/run", "run", None, "bind")
	except (OSError, RuntimeError):
		log.error("failed to initialize mount points")
		undo_mounts(ctx, root)
		raise
