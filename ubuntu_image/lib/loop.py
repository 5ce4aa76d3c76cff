from logging import getLogger
log = getLogger(__name__)


def loop_setup(ctx, path: str, block_size: int = 512) -> str:
	"""
	Attach an image file to a free loop device with partition scanning
	loop_setup(ctx, "pc.img") = "/dev/loop0"
	"""
	cmds = [
		"losetup", "--find", "--show", "--partscan",
		"--sector-size", str(block_size), path,
	]
	ret, out = ctx.run_external(cmds, want_stdout=True)
	if ret != 0: raise OSError("losetup failed")
	dev = out.strip()
	if not dev.startswith("/dev/"):
		raise OSError(f"losetup returned bad device {dev}")
	log.info(f"created loop device {dev} from {path}")
	return dev


def loop_detach(ctx, dev: str):
	ret = ctx.run_external(["losetup", "--detach", dev])
	if ret != 0: raise OSError(f"detach loop {dev} failed")


def loop_partition(dev: str, number: int) -> str:
	"""
	loop_partition("/dev/loop0", 2) = "/dev/loop0p2"
	"""
	return f"{dev}p{number}"
