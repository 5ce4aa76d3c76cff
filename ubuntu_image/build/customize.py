import os
import re
import glob
import shutil
from logging import getLogger
from ubuntu_image.lib.context import BuildContext
from ubuntu_image.classic.definition import Manual, CloudInit, FstabEntry
from ubuntu_image.build.classic import definition, backup_resolv_conf
log = getLogger(__name__)


LOCALE_PRESENT = re.compile(r"(?m)^LANG=|LC_[A-Z_]+=")
DEFAULT_LOCALE = "# Default Ubuntu locale\nLANG=C.UTF-8\n"
CLOUD_DATASOURCE = (
	"# to update this file, run dpkg-reconfigure cloud-init\n"
	"datasource_list: [ NoCloud ]\n"
)


def in_root(root: str, path: str) -> str:
	return os.path.join(root, path.lstrip("/"))


def clean_rootfs(ctx: BuildContext):
	"""
	Remove what must be unique per machine before the image is duplicated
	"""
	root = ctx.get_chroot()
	files = [
		in_root(root, "etc/machine-id"),
		in_root(root, "var/lib/dbus/machine-id"),
	]
	for pattern in [
		"etc/ssh/ssh_host_*_key.pub",
		"etc/ssh/ssh_host_*_key",
		"var/cache/debconf/*-old",
		"var/lib/dpkg/*-old",
	]:
		files.extend(glob.glob(in_root(root, pattern)))
	for path in files:
		if not os.path.lexists(path): continue
		log.debug(f"removing {path}")
		os.remove(path)
	for path in glob.glob(in_root(root, "etc/udev/rules.d/*persistent-net.rules")):
		log.debug(f"truncating {path}")
		os.truncate(path, 0)


def write_cloud_init(seed: str, cloud_init: CloudInit):
	for name, data, header in [
		("meta-data", cloud_init.meta_data, False),
		("user-data", cloud_init.user_data, True),
		("network-config", cloud_init.network_config, False),
	]:
		if not data: continue
		if header and not data.startswith("#cloud-config\n"): raise ValueError(
			f"provided cloud-init customization for {name} is missing proper header"
		)
		with open(os.path.join(seed, name), "w") as f:
			f.write(data)


def customize_cloud_init(ctx: BuildContext):
	root = ctx.get_chroot()
	seed = in_root(root, "var/lib/cloud/seed/nocloud")
	os.makedirs(seed, mode=0o0755, exist_ok=True)
	write_cloud_init(seed, definition(ctx).customization.cloud_init)
	cfg = in_root(root, "etc/cloud/cloud.cfg.d/90_dpkg.cfg")
	os.makedirs(os.path.dirname(cfg), mode=0o0755, exist_ok=True)
	with open(cfg, "w") as f:
		f.write(CLOUD_DATASOURCE)
	log.info("configured cloud-init NoCloud seed")


def fstab_content(entries: list[FstabEntry]) -> str:
	return "\n".join(entry.line() for entry in entries) + "\n"


def customize_fstab(ctx: BuildContext):
	path = in_root(ctx.get_chroot(), "etc/fstab")
	with open(path, "w") as f:
		f.write(fstab_content(definition(ctx).customization.fstab))
	log.info(f"wrote {path}")


def manual_call(ctx: BuildContext, root: str, cmd: list[str], stdin: str = None):
	ret = ctx.run_external(["chroot", root] + cmd, stdin=stdin)
	if ret != 0: raise OSError(f"{cmd[0]} in chroot failed with {ret}")


def perform_manual_customization(ctx: BuildContext):
	"""
	Apply the manual customizations in the order directories, files,
	scripts, empty files, groups, users
	"""
	defn = definition(ctx)
	manual: Manual = defn.customization.manual
	root = ctx.get_chroot()
	backup_resolv_conf(root)

	for d in manual.make_dirs:
		log.debug(f"creating folder {d.path} with {d.permissions:04o}")
		os.makedirs(in_root(root, d.path), mode=d.permissions, exist_ok=True)

	for c in manual.copy_file:
		src = defn.resolve(c.source)
		dst = in_root(root, c.destination)
		log.debug(f"copying {src} to {dst}")
		if os.path.isdir(src): shutil.copytree(src, dst, symlinks=True, dirs_exist_ok=True)
		else: shutil.copy2(src, dst, follow_symlinks=False)

	for path in manual.execute:
		log.info(f"executing {path} in chroot")
		manual_call(ctx, root, [path])

	for path in manual.touch_file:
		log.debug(f"creating empty file {path}")
		open(in_root(root, path), "w").close()

	for g in manual.add_group:
		cmds = ["groupadd", g.name]
		if g.id: cmds.extend(["--gid", g.id])
		manual_call(ctx, root, cmds)
		log.info(f"added group {g.name}")

	for u in manual.add_user:
		cmds = ["useradd", u.name]
		if u.id: cmds.extend(["--uid", u.id])
		manual_call(ctx, root, cmds)
		if u.password:
			cmds = ["chpasswd"]
			if u.password_type == "hash": cmds.append("-e")
			manual_call(ctx, root, cmds, stdin=f"{u.name}:{u.password}")
		if u.expire: manual_call(ctx, root, ["passwd", "--expire", u.name])
		log.info(f"added user {u.name}")


def set_default_locale(ctx: BuildContext):
	"""
	Default to C.UTF-8 unless the rootfs already configures a locale
	"""
	path = in_root(ctx.get_chroot(), "etc/default/locale")
	if os.path.exists(path):
		with open(path, "r") as f:
			if LOCALE_PRESENT.search(f.read()):
				log.debug("rootfs already has a default locale")
				return
	os.makedirs(os.path.dirname(path), mode=0o0755, exist_ok=True)
	with open(path, "w") as f:
		f.write(DEFAULT_LOCALE)
	log.info("set default locale to C.UTF-8")
