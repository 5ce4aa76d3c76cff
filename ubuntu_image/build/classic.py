import os
import re
import shutil
import hashlib
import tempfile
from urllib.request import urlopen
from logging import getLogger
from ubuntu_image.lib import json
from ubuntu_image.lib.config import ConfigError
from ubuntu_image.lib.archive import extract_archive
from ubuntu_image.lib.context import BuildContext
from ubuntu_image.classic.definition import ImageDefinition, PPA
from ubuntu_image.build.mount import init_mount, undo_mounts
from ubuntu_image.build.common import populate_rootfs_contents_hooks
from ubuntu_image.build.snap import write_revisions
log = getLogger(__name__)


LAUNCHPAD_API = "https://api.launchpad.net"
KEYSERVER = "hkp://keyserver.ubuntu.com:80"
HOST_RESOLV = "/etc/resolv.conf"
PACKAGE_LINE = re.compile(r"^[a-z0-9]")
APT_OPTIONS = [
	"--assume-yes",
	"--quiet",
	"--option=Dpkg::options::=--force-unsafe-io",
	"--option=Dpkg::Options::=--force-confold",
	"--no-install-recommends",
]


def definition(ctx: BuildContext) -> ImageDefinition:
	if ctx.definition is None:
		raise RuntimeError("no image definition loaded for this build")
	return ctx.definition


def call(ctx: BuildContext, cmd: list[str], **kwargs):
	ret = ctx.run_external(cmd, **kwargs)
	if ret != 0: raise OSError(f"{cmd[0]} failed with {ret}")


def chroot_call(ctx: BuildContext, cmd: list[str], env: dict = None):
	ret = ctx.run_chroot(ctx.get_chroot(), cmd, env=env)
	if ret != 0: raise OSError(f"{cmd[0]} in chroot failed with {ret}")


def determine_output_directory(ctx: BuildContext):
	output = ctx.get_output()
	os.makedirs(output, mode=0o0755, exist_ok=True)
	log.info(f"artifacts will be written to {output}")


def build_gadget_tree(ctx: BuildContext):
	"""
	Fetch the gadget source and build it with make
	"""
	gadget = definition(ctx).gadget
	folder = os.path.join(ctx.get_scratch(), "gadget")
	if os.path.exists(folder): shutil.rmtree(folder)
	match gadget.type:
		case "git":
			cmds = ["git", "clone", "--depth", "1", "--single-branch"]
			if gadget.branch: cmds.extend(["--branch", gadget.branch])
			cmds.extend([gadget.url, folder])
			call(ctx, cmds)
		case "directory":
			src = definition(ctx).resolve(gadget.url)
			log.debug(f"copying gadget source {src}")
			shutil.copytree(src, folder, symlinks=True)
		case _: raise ConfigError(f"cannot build gadget of type {gadget.type}")
	cmds = ["make"]
	if gadget.target: cmds.append(gadget.target)
	env = os.environ.copy()
	env["ARCH"] = definition(ctx).architecture
	env["SERIES"] = definition(ctx).series
	call(ctx, cmds, cwd=folder, env=env)
	log.info(f"built gadget tree in {folder}")


def prepare_gadget_tree(ctx: BuildContext):
	gadget = definition(ctx).gadget
	if gadget.type == "prebuilt":
		src = definition(ctx).resolve(gadget.url)
	else:
		src = os.path.join(ctx.get_scratch(), "gadget", "install")
	if not os.path.isdir(src):
		raise ConfigError(f"gadget tree {src} not found")
	shutil.copytree(src, ctx.get_gadget(), symlinks=True, dirs_exist_ok=True)
	ctx.yaml_path = os.path.join(ctx.get_gadget(), "meta", "gadget.yaml")
	log.info(f"prepared gadget tree from {src}")


def volume_names(defn: ImageDefinition, volumes: list[str]) -> dict[str, str]:
	"""
	Map each gadget volume to the file name of its raw image,
	qcow2 images need a raw image to convert from
	"""
	names: dict[str, str] = {}
	img, qcow2 = defn.artifacts.img, defn.artifacts.qcow2
	multiple = len(volumes) > 1
	for artifact in img + qcow2:
		if multiple and not artifact.volume: raise ConfigError(
			"Volume names must be specified for each image "
			"when using a gadget with more than one volume"
		)
		if not artifact.volume: artifact.volume = volumes[0]
		if artifact.volume not in volumes:
			raise ConfigError(f"volume {artifact.volume} not found in gadget")
	for artifact in img:
		names[artifact.volume] = artifact.name
	for artifact in qcow2:
		if artifact.volume in names: continue
		names[artifact.volume] = f"{artifact.name}.img"
	return names


def verify_artifact_names(ctx: BuildContext):
	names = volume_names(definition(ctx), ctx.gadget.volume_order)
	ctx.volume_names = names
	for volume, name in names.items():
		log.debug(f"volume {volume} will be written to {name}")


def sha256_file(path: str) -> str:
	h = hashlib.sha256()
	with open(path, "rb") as f:
		while True:
			chunk = f.read(1 << 20)
			if not chunk: break
			h.update(chunk)
	return h.hexdigest()


def extract_rootfs_tar(ctx: BuildContext):
	"""
	Unpack a prebuilt rootfs tarball as the chroot
	"""
	defn = definition(ctx)
	tarball = defn.rootfs.tarball
	path = defn.resolve(tarball.url)
	if not os.path.isfile(path):
		raise ConfigError(f"rootfs tarball {path} not found")
	if tarball.sha256sum:
		digest = sha256_file(path)
		if digest != tarball.sha256sum: raise ValueError(
			f"calculated sha256 sum of rootfs tarball {digest} "
			f"does not match {tarball.sha256sum}"
		)
	if tarball.gpg:
		call(ctx, ["gpg", "--verify", defn.resolve(tarball.gpg), path])
	extract_archive(path, ctx.get_chroot())
	log.info(f"extracted rootfs tarball {path}")


def parse_seed_output(path: str) -> list[str]:
	"""
	Names listed in a germinate output file, header and footer lines skipped
	"""
	ret = []
	if not os.path.exists(path): return ret
	with open(path, "r") as f:
		for line in f:
			if not PACKAGE_LINE.match(line): continue
			ret.append(line.split()[0])
	return ret


def germinate(ctx: BuildContext):
	"""
	Work out the packages and snaps the seeds pull in
	"""
	defn = definition(ctx)
	seed = defn.rootfs.seed
	folder = os.path.join(ctx.work, "germinate")
	os.makedirs(folder, mode=0o0755, exist_ok=True)
	seed_dist = defn.rootfs.flavor
	if seed.branch: seed_dist += f".{seed.branch}"
	cmds = [
		"germinate",
		"--mirror", defn.rootfs.mirror,
		"--arch", defn.architecture,
		"--dist", defn.series,
		"--seed-source", ",".join(seed.urls),
		"--seed-dist", seed_dist,
		"--no-rdepends",
	]
	if seed.vcs: cmds.append("--vcs=auto")
	if len(defn.rootfs.components) > 0:
		cmds.append(f"--components={','.join(defn.rootfs.components)}")
	call(ctx, cmds, cwd=folder)
	packages, snaps = [], []
	for name in seed.names:
		for pkg in parse_seed_output(os.path.join(folder, f"{name}.seed")):
			if pkg not in packages: packages.append(pkg)
		for snap in parse_seed_output(os.path.join(folder, f"{name}.snaps")):
			if snap not in snaps: snaps.append(snap)
	ctx.artifacts["packages"] = packages
	ctx.artifacts["snaps"] = snaps
	log.info(f"germinate found {len(packages)} packages and {len(snaps)} snaps")


def create_chroot(ctx: BuildContext):
	defn = definition(ctx)
	chroot = ctx.get_chroot()
	os.makedirs(chroot, mode=0o0755, exist_ok=True)
	cmds = ["debootstrap", "--arch", defn.architecture, "--variant=minbase"]
	custom = defn.customization
	if custom is not None and len(custom.extra_ppas) > 0:
		cmds.append("--include=ca-certificates")
	if len(defn.rootfs.components) > 0:
		cmds.append(f"--components={','.join(defn.rootfs.components)}")
	cmds.extend([defn.series, chroot, defn.rootfs.mirror])
	call(ctx, cmds)

	with open(os.path.join(chroot, "etc", "hostname"), "w") as f:
		f.write("ubuntu\n")

	# the build host resolver must not leak into the image
	resolv = os.path.join(chroot, "etc", "resolv.conf")
	if os.path.lexists(resolv): os.remove(resolv)
	open(resolv, "w").close()

	with open(os.path.join(chroot, "etc", "apt", "sources.list"), "a") as f:
		f.writelines(defn.build_pocket_list())
	log.info(f"created chroot {chroot}")


def ppa_fingerprint(ppa: PPA) -> str:
	"""
	Signing key fingerprint of a PPA, public ones are looked up on Launchpad
	"""
	if ppa.fingerprint: return ppa.fingerprint
	url = f"{LAUNCHPAD_API}/devel/~{ppa.user}/+archive/ubuntu/{ppa.archive}"
	log.debug(f"looking up signing key of ppa {ppa.name} at {url}")
	with urlopen(url) as response:
		data = json.loads(response.read().decode())
	fingerprint = data.get("signing_key_fingerprint", "")
	if not fingerprint:
		raise ValueError(f"no signing key found for ppa {ppa.name}")
	return fingerprint


def import_ppa_key(ctx: BuildContext, ppa: PPA, output: str):
	fingerprint = ppa_fingerprint(ppa)
	with tempfile.TemporaryDirectory(prefix="ubuntu-image-gpg") as home:
		common = [
			"gpg", "--no-default-keyring", "--no-options", "--batch",
			"--homedir", home, "--keyserver", KEYSERVER,
		]
		call(ctx, common + ["--recv-keys", fingerprint])
		call(ctx, common + ["--output", output, "--export", fingerprint])


def ppa_paths(ctx: BuildContext, ppa: PPA) -> tuple[str, str]:
	name = ppa.file_name(definition(ctx).series)
	apt = os.path.join(ctx.get_chroot(), "etc", "apt")
	key = name.removesuffix(".list") + ".gpg"
	return (
		os.path.join(apt, "sources.list.d", name),
		os.path.join(apt, "trusted.gpg.d", key),
	)


def add_extra_ppas(ctx: BuildContext):
	defn = definition(ctx)
	for ppa in defn.customization.extra_ppas:
		source, key = ppa_paths(ctx, ppa)
		os.makedirs(os.path.dirname(source), mode=0o0755, exist_ok=True)
		os.makedirs(os.path.dirname(key), mode=0o0755, exist_ok=True)
		with open(source, "w") as f:
			f.write(ppa.file_content(defn.series))
		import_ppa_key(ctx, ppa, key)
		log.info(f"added ppa {ppa.name}")


def clean_extra_ppas(ctx: BuildContext):
	for ppa in definition(ctx).customization.extra_ppas:
		if ppa.keep_enabled: continue
		for path in ppa_paths(ctx, ppa):
			log.debug(f"removing {path}")
			os.remove(path)
		log.info(f"removed ppa {ppa.name}")


def backup_resolv_conf(chroot: str):
	"""
	Let the chroot resolve names with the host config while keeping its own
	"""
	resolv = os.path.join(chroot, "etc", "resolv.conf")
	backup = f"{resolv}.tmp"
	if os.path.lexists(backup): return
	if not os.path.exists(HOST_RESOLV):
		log.warning(f"host has no {HOST_RESOLV}, name resolution may fail in chroot")
		return
	if os.path.lexists(resolv): os.rename(resolv, backup)
	shutil.copyfile(HOST_RESOLV, resolv)


def restore_resolv_conf(chroot: str):
	resolv = os.path.join(chroot, "etc", "resolv.conf")
	backup = f"{resolv}.tmp"
	if not os.path.lexists(backup): return
	if os.path.lexists(resolv): os.remove(resolv)
	os.rename(backup, resolv)


def package_list(ctx: BuildContext) -> list[str]:
	defn = definition(ctx)
	packages = list(ctx.artifacts.get("packages", []))
	if defn.customization is not None:
		packages.extend(defn.customization.extra_packages)
	if defn.kernel: packages.append(defn.kernel)
	return packages


def install_packages(ctx: BuildContext):
	chroot = ctx.get_chroot()
	packages = package_list(ctx)
	env = os.environ.copy()
	env["DEBIAN_FRONTEND"] = "noninteractive"
	backup_resolv_conf(chroot)
	init_mount(ctx, chroot)
	try:
		chroot_call(ctx, ["apt", "update"], env=env)
		chroot_call(ctx, ["apt"] + APT_OPTIONS + ["install"] + packages, env=env)
	finally:
		undo_mounts(ctx, chroot)
	log.info(f"installed {len(packages)} packages")


def snap_list(ctx: BuildContext) -> list[str]:
	"""
	Snaps to stage as prepare-image arguments, name or name=channel
	"""
	defn = definition(ctx)
	snaps = {name: "" for name in ctx.artifacts.get("snaps", [])}
	if defn.customization is not None:
		for snap in defn.customization.extra_snaps:
			snaps[snap.name] = snap.channel
	return [f"{name}={ch}" if ch else name for name, ch in snaps.items()]


def prepare_classic_image(ctx: BuildContext):
	"""
	Stage the snaps of the image in the chroot
	"""
	defn = definition(ctx)
	snaps = snap_list(ctx)
	if len(snaps) == 0:
		log.info("no snaps to stage")
		return
	if not defn.model_assertion:
		raise ConfigError("model-assertion is required to stage snaps")
	cmds = ["snap", "prepare-image", "--classic", "--arch", defn.architecture]
	if ctx.common.channel: cmds.extend(["--channel", ctx.common.channel])
	for snap in snaps: cmds.extend(["--snap", snap])
	revisions = {}
	if defn.customization is not None:
		revisions = {
			s.name: s.revision
			for s in defn.customization.extra_snaps
			if s.revision > 0
		}
	if len(revisions) > 0:
		cmds.extend(["--revisions", write_revisions(ctx, revisions)])
	cmds.extend([defn.resolve(defn.model_assertion), ctx.get_chroot()])
	call(ctx, cmds)
	log.info(f"staged {len(snaps)} snaps")


def preseed_classic_image(ctx: BuildContext):
	chroot = ctx.get_chroot()
	if len(snap_list(ctx)) == 0:
		log.info("no snaps staged, skip preseeding")
		return
	init_mount(ctx, chroot)
	try: call(ctx, ["/usr/lib/snapd/snap-preseed", chroot])
	finally: undo_mounts(ctx, chroot)


def build_rootfs_from_tasks(ctx: BuildContext):
	tasks = definition(ctx).rootfs.archive_tasks
	log.warning(f"building rootfs from archive tasks {', '.join(tasks)} is not supported yet")


def customize_sources_list(ctx: BuildContext):
	"""
	Replace the build time sources.list with the one the image ships
	"""
	path = os.path.join(ctx.get_chroot(), "etc", "apt", "sources.list")
	os.makedirs(os.path.dirname(path), mode=0o0755, exist_ok=True)
	with open(path, "w") as f:
		f.write("# See http://help.ubuntu.com/community/UpgradeNotes for how to upgrade to\n")
		f.write("# newer versions of the distribution.\n")
		f.writelines(definition(ctx).target_pocket_list())
	log.info(f"wrote {path}")


def fix_fstab(content: str) -> str:
	"""
	Point the root mount of an fstab at the writable partition
	"""
	lines = []
	found = False
	for line in content.split("\n"):
		if line == "# UNCONFIGURED FSTAB": continue
		if line.startswith("#"):
			lines.append(line)
			continue
		entry = line.split()
		if len(entry) < 6: continue
		if entry[1] == "/" and not found:
			entry[0] = "LABEL=writable"
			entry[3] = "discard,errors=remount-ro"
			entry[5] = "1"
			found = True
		lines.append("\t".join(entry))
	if not found:
		lines.append("LABEL=writable\t/\text4\tdiscard,errors=remount-ro\t0\t1")
	return "\n".join(lines) + "\n"


def populate_rootfs_contents(ctx: BuildContext):
	"""
	Copy the finished chroot into the rootfs
	"""
	defn = definition(ctx)
	chroot = ctx.get_chroot()
	restore_resolv_conf(chroot)
	call(ctx, ["cp", "-a", f"{chroot}/.", ctx.get_rootfs()])
	custom = defn.customization
	if custom is not None and len(custom.fstab) == 0:
		fstab = os.path.join(ctx.get_rootfs(), "etc", "fstab")
		content = ""
		if os.path.exists(fstab):
			with open(fstab, "r") as f: content = f.read()
		with open(fstab, "w") as f:
			f.write(fix_fstab(content))
	log.info(f"populated rootfs from {chroot}")
	populate_rootfs_contents_hooks(ctx)
