import os
from logging import getLogger
from ubuntu_image.lib.context import BuildContext
from ubuntu_image.lib.loop import loop_detach, loop_partition
from ubuntu_image.gadget.structure import Volume
from ubuntu_image.disk.layout.table import partition_numbers
from ubuntu_image.build.mount import init_mount, undo_mounts
log = getLogger(__name__)


GRUB_TARGETS = {
	"amd64": "x86_64-efi",
	"arm64": "arm64-efi",
	"armhf": "arm-efi",
}

OS_PROBER = "/etc/grub.d/30_os-prober"


def boot_partition_number(volume: Volume, seeded: bool) -> int:
	"""
	Partition number of the system-boot structure, -1 when there is none
	"""
	for idx, number in partition_numbers(volume, seeded).items():
		if volume.structures[idx].is_system_boot():
			return number
	return -1


def chroot_call(ctx: BuildContext, root: str, cmd: list[str]):
	ret = ctx.run_chroot(root, cmd)
	if ret != 0: raise OSError(f"{cmd[0]} failed")


def setup_grub(ctx: BuildContext, image: str, rootfs_num: int, boot_num: int):
	"""
	Mount the rootfs of the image and install grub from inside it
	"""
	target = GRUB_TARGETS.get(ctx.arch)
	if target is None:
		raise RuntimeError(f"no valid efi target for architecture {ctx.arch}")
	mnt = os.path.join(ctx.get_scratch(), "loopback")
	loop = ctx.loop_setup(image)
	try:
		ctx.run_external(["udevadm", "settle"])
		ctx.mount(loop_partition(loop, rootfs_num), mnt)
		if boot_num > 0:
			ctx.mount(loop_partition(loop, boot_num), os.path.join(mnt, "boot", "efi"))
		init_mount(ctx, mnt)
		chroot_call(ctx, mnt, [
			"grub-install", loop,
			"--boot-directory=/boot",
			"--efi-directory=/boot/efi",
			f"--target={target}",
			"--uefi-secure-boot",
			"--no-nvram",
		])
		if ctx.arch == "amd64":
			chroot_call(ctx, mnt, ["grub-install", loop, "--target=i386-pc"])
		chroot_call(ctx, mnt, ["dpkg-divert", "--local", "--rename", OS_PROBER])
		try: chroot_call(ctx, mnt, ["update-grub"])
		finally: chroot_call(ctx, mnt, [
			"dpkg-divert", "--remove", "--local", "--rename", OS_PROBER,
		])
	finally:
		ctx.run_external(["udevadm", "settle"])
		undo_mounts(ctx, mnt)
		loop_detach(ctx, loop)
		ctx.loops.remove(loop)


def update_bootloader(ctx: BuildContext):
	volume = ctx.gadget.rootfs_volume()
	if ctx.rootfs_part_num == -1 or volume is None:
		raise RuntimeError("could not determine partition number of the root filesystem")
	match volume.bootloader:
		case "grub":
			image = os.path.join(ctx.get_output(), ctx.volume_names[volume.name])
			boot = boot_partition_number(volume, ctx.is_seeded)
			setup_grub(ctx, image, ctx.rootfs_part_num, boot)
		case _:
			log.warning(f"updating bootloader {volume.bootloader} not yet supported")
