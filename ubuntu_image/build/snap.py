import os
from logging import getLogger
from ubuntu_image.lib import json
from ubuntu_image.lib.context import BuildContext
from ubuntu_image.machine.options import SnapOptions
from ubuntu_image.build.common import populate_rootfs_contents_hooks
log = getLogger(__name__)


def customizations(opts: SnapOptions) -> dict:
	ret = {}
	if opts.cloud_init: ret["cloud-init-user-data"] = opts.cloud_init
	if opts.disable_console_conf: ret["console-conf"] = "disabled"
	if opts.factory_image: ret["boot-flags"] = ["factory"]
	return ret


def write_revisions(ctx: BuildContext, revisions: dict[str, int]) -> str:
	"""
	Write pinned snap revisions as "<name> <revision>" lines for prepare-image
	"""
	path = os.path.join(ctx.get_scratch(), "revisions.manifest")
	with open(path, "w") as f:
		for name, rev in sorted(revisions.items()):
			log.warning(f"revision {rev} for snap {name} may not be the latest available version")
			f.write(f"{name} {rev}\n")
	return path


def prepare_image_args(ctx: BuildContext) -> list[str]:
	"""
	Build the snap prepare-image command line of this build
	"""
	opts: SnapOptions = ctx.options
	cmds = ["snap", "prepare-image"]
	if ctx.common.channel: cmds.extend(["--channel", ctx.common.channel])
	for snap in opts.snaps: cmds.extend(["--snap", snap])
	if opts.preseed: cmds.append("--preseed")
	cmds.extend([
		"--write-revisions",
		os.path.join(ctx.get_output(), "seed.manifest"),
	])
	if len(opts.revisions) > 0:
		cmds.extend(["--revisions", write_revisions(ctx, opts.revisions)])
	custom = customizations(opts)
	if len(custom) > 0:
		path = os.path.join(ctx.get_scratch(), "customize.json")
		with open(path, "w") as f:
			json.dump(custom, f)
		cmds.extend(["--customize", path])
	cmds.extend([opts.model_assertion, ctx.get_unpack()])
	return cmds


def prepare_image(ctx: BuildContext):
	os.makedirs(ctx.get_output(), mode=0o0755, exist_ok=True)
	ret = ctx.run_external(prepare_image_args(ctx))
	if ret != 0: raise OSError("snap prepare-image failed")
	ctx.yaml_path = os.path.join(ctx.get_gadget(), "meta", "gadget.yaml")


def populate_rootfs_contents(ctx: BuildContext):
	"""
	Move the prepared image into the rootfs, seeded builds only carry the seed
	"""
	if ctx.is_seeded:
		src = os.path.join(ctx.get_unpack(), "system-seed")
		dst = ctx.get_rootfs()
	else:
		src = os.path.join(ctx.get_unpack(), "image")
		dst = os.path.join(ctx.get_rootfs(), "system-data")
		os.makedirs(os.path.join(dst, "boot"), mode=0o0755, exist_ok=True)
	for name in os.listdir(src):
		if not ctx.is_seeded and name == "boot": continue
		os.rename(os.path.join(src, name), os.path.join(dst, name))
	log.info(f"populated rootfs from {src}")
	populate_rootfs_contents_hooks(ctx)


def write_snap_manifest(snaps: str, output: str):
	"""
	List "<name> <revision>" for every snap file of a folder
	"""
	if not os.path.isdir(snaps):
		log.debug(f"no snaps folder {snaps}, skip manifest")
		return
	with open(output, "w") as f:
		for name in sorted(os.listdir(snaps)):
			if not name.endswith(".snap"): continue
			snap, rev = name[:-len(".snap")].split("_", 1)
			f.write(f"{snap} {rev}\n")
	log.info(f"wrote snap manifest {output}")


def generate_snap_manifest(ctx: BuildContext):
	output = os.path.join(ctx.get_output(), "snaps.manifest")
	snaps = os.path.join(ctx.get_rootfs(), "system-data", "var", "lib", "snapd", "snaps")
	write_snap_manifest(snaps, output)
