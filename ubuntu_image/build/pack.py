import os
from logging import getLogger
from ubuntu_image.lib.utils import copy_tree
from ubuntu_image.lib.context import BuildContext
from ubuntu_image.machine.options import PackOptions
log = getLogger(__name__)


def populate_temporary_directories(ctx: BuildContext):
	"""
	Copy the prepared gadget tree and rootfs into the work directory
	"""
	opts: PackOptions = ctx.options
	copy_tree(opts.rootfs_dir, ctx.get_rootfs())
	copy_tree(opts.gadget_dir, ctx.get_gadget())
	ctx.yaml_path = os.path.join(ctx.get_gadget(), "meta", "gadget.yaml")
	log.info(f"copied gadget {opts.gadget_dir} and rootfs {opts.rootfs_dir}")
