"""Tests for the classic build steps."""

import os
import io
import tarfile
import hashlib
import pytest
from ubuntu_image.lib.config import ConfigError
from ubuntu_image.classic.definition import parse_definition
from ubuntu_image.machine.classic import ClassicVariant
from ubuntu_image.build import classic
from ubuntu_image.build.artifacts import generate_package_manifest, generate_rootfs_tarball

SEED = {"seed": {"urls": ["git://git.launchpad.net/ubuntu-seeds"], "names": ["server"]}}


def definition(folder: str = "", **extra):
	config = {
		"name": "ubuntu-server",
		"architecture": "amd64",
		"series": "noble",
		"rootfs": SEED,
	}
	config.update(extra)
	return parse_definition(config, folder)


def step_names(ctx, defn) -> list[str]:
	variant = ClassicVariant()
	variant.definition = defn
	return [step.name for step in variant.calculate_steps(ctx)]


@pytest.fixture
def classic_ctx(ctx):
	ctx.variant = "classic"
	ctx.definition = definition()
	os.makedirs(os.path.join(ctx.get_chroot(), "etc", "apt"))
	os.makedirs(ctx.get_scratch())
	return ctx


# ── Step lists ──────────────────────────────────────────────────────


def test_steps_seed_with_disk(ctx) -> None:
	defn = definition(
		gadget={"url": "https://git.launchpad.net/snap-pc", "type": "git"},
		customization={
			"extra-ppas": [{"name": "user/tools"}],
			"cloud-init": {"user-data": "#cloud-config\n"},
		},
		artifacts={"img": [{"name": "pc.img"}], "manifest": {"name": "pc.manifest"}},
	)
	assert step_names(ctx, defn) == [
		"make_temporary_directories",
		"determine_output_directory",
		"build_gadget_tree",
		"prepare_gadget_tree",
		"load_gadget_yaml",
		"verify_artifact_names",
		"germinate",
		"create_chroot",
		"add_extra_ppas",
		"install_packages",
		"clean_extra_ppas",
		"prepare_classic_image",
		"preseed_classic_image",
		"clean_rootfs",
		"customize_sources_list",
		"customize_cloud_init",
		"set_default_locale",
		"populate_rootfs_contents",
		"calculate_rootfs_size",
		"populate_bootfs_contents",
		"populate_prepare_partitions",
		"make_disk",
		"update_bootloader",
		"generate_package_manifest",
		"finish",
	]


def test_steps_tarball_without_gadget(ctx) -> None:
	defn = definition(
		rootfs={"tarball": {"url": "root.tar.gz"}},
		artifacts={"rootfs-tarball": {"name": "out.tar"}},
	)
	assert step_names(ctx, defn) == [
		"make_temporary_directories",
		"determine_output_directory",
		"extract_rootfs_tar",
		"clean_rootfs",
		"customize_sources_list",
		"set_default_locale",
		"populate_rootfs_contents",
		"generate_rootfs_tarball",
		"finish",
	]


def test_steps_tarball_with_extra_packages(ctx) -> None:
	defn = definition(
		rootfs={"tarball": {"url": "root.tar.gz"}},
		customization={
			"extra-packages": [{"name": "vim"}],
			"fstab": [{"label": "writable", "mountpoint": "/", "filesystem-type": "ext4"}],
			"manual": {"touch-file": [{"path": "/etc/touched"}]},
		},
	)
	names = step_names(ctx, defn)
	assert names[2:4] == ["extract_rootfs_tar", "install_packages"]
	assert "add_extra_ppas" not in names
	assert "prepare_classic_image" not in names
	assert names.index("customize_fstab") < names.index("perform_manual_customization")
	assert names.index("perform_manual_customization") < names.index("set_default_locale")


def test_steps_prebuilt_gadget_without_disk(ctx) -> None:
	ctx.common.disk_info = "/info"
	defn = definition(gadget={"type": "prebuilt", "url": "gadget"})
	names = step_names(ctx, defn)
	assert "build_gadget_tree" not in names
	assert "verify_artifact_names" not in names
	assert "make_disk" not in names
	assert "populate_bootfs_contents" in names
	assert names.index("generate_disk_info") == names.index("populate_rootfs_contents") + 1


def test_steps_qcow2(ctx) -> None:
	defn = definition(
		gadget={"type": "prebuilt"},
		artifacts={"qcow2": [{"name": "pc.qcow2"}], "filelist": {"name": "pc.filelist"}},
	)
	names = step_names(ctx, defn)
	assert names[-5:] == ["make_disk", "update_bootloader", "make_qcow2_image", "generate_filelist", "finish"]


def test_steps_archive_tasks(ctx) -> None:
	names = step_names(ctx, definition(rootfs={"archive-tasks": ["minimal"]}))
	assert "build_rootfs_from_tasks" in names
	assert "germinate" not in names


# ── Artifact names ──────────────────────────────────────────────────


def test_volume_names_single_volume() -> None:
	defn = definition(gadget={"type": "prebuilt"}, artifacts={"img": [{"name": "pc.img"}]})
	assert classic.volume_names(defn, ["pc"]) == {"pc": "pc.img"}
	assert defn.artifacts.img[0].volume == "pc"


def test_volume_names_qcow2_only() -> None:
	defn = definition(gadget={"type": "prebuilt"}, artifacts={"qcow2": [{"name": "pc.qcow2"}]})
	assert classic.volume_names(defn, ["pc"]) == {"pc": "pc.qcow2.img"}


def test_volume_names_qcow2_reuses_img() -> None:
	defn = definition(gadget={"type": "prebuilt"}, artifacts={
		"img": [{"name": "pc.img"}],
		"qcow2": [{"name": "pc.qcow2"}],
	})
	assert classic.volume_names(defn, ["pc"]) == {"pc": "pc.img"}


def test_volume_names_multiple_volumes() -> None:
	defn = definition(gadget={"type": "prebuilt"}, artifacts={"img": [{"name": "a.img"}]})
	with pytest.raises(ConfigError, match="Volume names must be specified"):
		classic.volume_names(defn, ["pc", "data"])
	defn = definition(gadget={"type": "prebuilt"}, artifacts={"img": [
		{"name": "a.img", "volume": "pc"},
		{"name": "b.img", "volume": "data"},
	]})
	assert classic.volume_names(defn, ["pc", "data"]) == {"pc": "a.img", "data": "b.img"}


def test_volume_names_unknown_volume() -> None:
	defn = definition(gadget={"type": "prebuilt"}, artifacts={"img": [{"name": "a.img", "volume": "nope"}]})
	with pytest.raises(ConfigError, match="nope"):
		classic.volume_names(defn, ["pc"])


# ── fstab ───────────────────────────────────────────────────────────


def test_fix_fstab_rewrites_root() -> None:
	content = "# /etc/fstab\nUUID=abc / ext4 defaults 0 0\nUUID=def /boot/efi vfat umask=0077 0 1\n"
	assert classic.fix_fstab(content) == (
		"# /etc/fstab\n"
		"LABEL=writable\t/\text4\tdiscard,errors=remount-ro\t0\t1\n"
		"UUID=def\t/boot/efi\tvfat\tumask=0077\t0\t1\n"
	)


def test_fix_fstab_unconfigured() -> None:
	assert classic.fix_fstab("# UNCONFIGURED FSTAB\n") == (
		"LABEL=writable\t/\text4\tdiscard,errors=remount-ro\t0\t1\n"
	)


def test_fix_fstab_empty() -> None:
	assert classic.fix_fstab("") == "LABEL=writable\t/\text4\tdiscard,errors=remount-ro\t0\t1\n"


# ── Rootfs from seeds ───────────────────────────────────────────────


def test_parse_seed_output(tmp_path) -> None:
	path = tmp_path / "server.seed"
	path.write_text(
		"Package         | Source  | Why\n"
		"----------------+---------+------\n"
		"adduser         | adduser | ubuntu-minimal\n"
		"apt             | apt     | ubuntu-minimal\n"
		"----------------+---------+------\n"
	)
	assert classic.parse_seed_output(str(path)) == ["adduser", "apt"]
	assert classic.parse_seed_output(str(tmp_path / "missing.seed")) == []


def test_germinate(classic_ctx, recorder) -> None:
	ctx = classic_ctx
	folder = os.path.join(ctx.work, "germinate")
	os.makedirs(folder)
	with open(os.path.join(folder, "server.seed"), "w") as f:
		f.write("bash | bash | server\napt | apt | server\n")
	with open(os.path.join(folder, "server.snaps"), "w") as f:
		f.write("lxd | lxd | server\n")
	classic.germinate(ctx)
	cmd = recorder.commands[0]
	assert cmd[0] == "germinate"
	assert cmd[cmd.index("--arch") + 1] == "amd64"
	assert cmd[cmd.index("--dist") + 1] == "noble"
	assert cmd[cmd.index("--seed-dist") + 1] == "ubuntu"
	assert "--vcs=auto" in cmd
	assert "--components=main,restricted" in cmd
	assert recorder.kwargs[0]["cwd"] == folder
	assert ctx.artifacts["packages"] == ["bash", "apt"]
	assert ctx.artifacts["snaps"] == ["lxd"]


def test_germinate_failure(classic_ctx, recorder) -> None:
	recorder.returns["germinate"] = 2
	with pytest.raises(OSError, match="germinate"):
		classic.germinate(classic_ctx)


def test_create_chroot(classic_ctx, recorder) -> None:
	ctx = classic_ctx
	chroot = ctx.get_chroot()
	with open(os.path.join(chroot, "etc", "resolv.conf"), "w") as f:
		f.write("nameserver 10.0.0.1\n")
	classic.create_chroot(ctx)
	assert recorder.commands == [[
		"debootstrap", "--arch", "amd64", "--variant=minbase",
		"--components=main,restricted",
		"noble", chroot, "http://archive.ubuntu.com/ubuntu/",
	]]
	with open(os.path.join(chroot, "etc", "hostname")) as f:
		assert f.read() == "ubuntu\n"
	assert os.path.getsize(os.path.join(chroot, "etc", "resolv.conf")) == 0
	with open(os.path.join(chroot, "etc", "apt", "sources.list")) as f:
		assert f.read() == "deb http://archive.ubuntu.com/ubuntu/ noble main restricted\n"


def test_package_list(classic_ctx) -> None:
	ctx = classic_ctx
	ctx.definition = definition(kernel="linux-generic", customization={"extra-packages": [{"name": "vim"}]})
	ctx.artifacts["packages"] = ["bash"]
	assert classic.package_list(ctx) == ["bash", "vim", "linux-generic"]


def test_install_packages_unmounts_on_failure(classic_ctx, recorder) -> None:
	ctx = classic_ctx
	ctx.artifacts["packages"] = ["bash"]
	recorder.returns["chroot"] = 100
	with pytest.raises(OSError, match="apt"):
		classic.install_packages(ctx)
	assert ctx.mounted == []
	mounts = [cmd for cmd in recorder.commands if cmd[0] == "mount"]
	assert len(mounts) == 5


# ── PPAs ────────────────────────────────────────────────────────────


def test_add_and_clean_ppas(classic_ctx, recorder) -> None:
	ctx = classic_ctx
	ctx.definition = definition(customization={"extra-ppas": [
		{"name": "user/tools", "fingerprint": "ABCD", "keep-enabled": False},
		{"name": "user/kept", "fingerprint": "EF01"},
	]})
	classic.add_extra_ppas(ctx)
	apt = os.path.join(ctx.get_chroot(), "etc", "apt")
	source = os.path.join(apt, "sources.list.d", "user-ubuntu-tools-noble.list")
	with open(source) as f:
		assert f.read() == "deb https://ppa.launchpadcontent.net/user/tools/ubuntu noble main\n"
	gpg = [cmd for cmd in recorder.commands if cmd[0] == "gpg"]
	assert len(gpg) == 4
	assert gpg[0][-2:] == ["--recv-keys", "ABCD"]
	assert gpg[1][-4:] == ["--output", os.path.join(apt, "trusted.gpg.d", "user-ubuntu-tools-noble.gpg"), "--export", "ABCD"]
	# the key file comes from gpg, stand in for it
	for name in ["user-ubuntu-tools-noble.gpg", "user-ubuntu-kept-noble.gpg"]:
		open(os.path.join(apt, "trusted.gpg.d", name), "w").close()
	classic.clean_extra_ppas(ctx)
	assert not os.path.exists(source)
	assert not os.path.exists(os.path.join(apt, "trusted.gpg.d", "user-ubuntu-tools-noble.gpg"))
	assert os.path.exists(os.path.join(apt, "sources.list.d", "user-ubuntu-kept-noble.list"))


# ── Snaps ───────────────────────────────────────────────────────────


def test_prepare_classic_image_without_snaps(classic_ctx, recorder) -> None:
	classic.prepare_classic_image(classic_ctx)
	assert recorder.commands == []


def test_prepare_classic_image_requires_model(classic_ctx, recorder) -> None:
	classic_ctx.artifacts["snaps"] = ["lxd"]
	with pytest.raises(ConfigError, match="model-assertion"):
		classic.prepare_classic_image(classic_ctx)


def test_prepare_classic_image(classic_ctx, recorder, tmp_path) -> None:
	ctx = classic_ctx
	ctx.common.channel = "edge"
	ctx.definition = definition(
		str(tmp_path),
		**{
			"model-assertion": "model.assert",
			"customization": {"extra-snaps": [{"name": "hello", "channel": "beta", "revision": 7}]},
		},
	)
	ctx.artifacts["snaps"] = ["lxd"]
	classic.prepare_classic_image(ctx)
	cmd = recorder.commands[0]
	revisions = os.path.join(ctx.get_scratch(), "revisions.manifest")
	assert cmd == [
		"snap", "prepare-image", "--classic", "--arch", "amd64",
		"--channel", "edge",
		"--snap", "lxd", "--snap", "hello=beta",
		"--revisions", revisions,
		str(tmp_path / "model.assert"), ctx.get_chroot(),
	]
	with open(revisions) as f:
		assert f.read() == "hello 7\n"


# ── Tarballs ────────────────────────────────────────────────────────


def make_tarball(path) -> str:
	with tarfile.open(path, "w:gz") as tar:
		data = b"Ubuntu\n"
		info = tarfile.TarInfo("etc/issue")
		info.size = len(data)
		tar.addfile(info, io.BytesIO(data))
	with open(path, "rb") as f:
		return hashlib.sha256(f.read()).hexdigest()


def test_extract_rootfs_tar(classic_ctx, recorder, tmp_path) -> None:
	ctx = classic_ctx
	digest = make_tarball(tmp_path / "root.tar.gz")
	ctx.definition = definition(str(tmp_path), rootfs={"tarball": {"url": "root.tar.gz", "sha256sum": digest}})
	classic.extract_rootfs_tar(ctx)
	with open(os.path.join(ctx.get_chroot(), "etc", "issue")) as f:
		assert f.read() == "Ubuntu\n"
	assert recorder.commands == []


def test_extract_rootfs_tar_checksum_mismatch(classic_ctx, tmp_path) -> None:
	ctx = classic_ctx
	make_tarball(tmp_path / "root.tar.gz")
	ctx.definition = definition(str(tmp_path), rootfs={"tarball": {"url": "root.tar.gz", "sha256sum": "0" * 64}})
	with pytest.raises(ValueError, match="does not match"):
		classic.extract_rootfs_tar(ctx)


def test_extract_rootfs_tar_missing(classic_ctx, tmp_path) -> None:
	classic_ctx.definition = definition(str(tmp_path), rootfs={"tarball": {"url": "missing.tar"}})
	with pytest.raises(ConfigError):
		classic.extract_rootfs_tar(classic_ctx)


# ── Rootfs finishing ────────────────────────────────────────────────


def test_customize_sources_list(classic_ctx) -> None:
	ctx = classic_ctx
	ctx.definition = definition(customization={"pocket": "security"})
	classic.customize_sources_list(ctx)
	with open(os.path.join(ctx.get_chroot(), "etc", "apt", "sources.list")) as f:
		lines = f.read().splitlines()
	assert lines[0].startswith("# See http://help.ubuntu.com/community/UpgradeNotes")
	assert lines[2:] == [
		"deb http://archive.ubuntu.com/ubuntu/ noble main restricted universe",
		"deb http://security.ubuntu.com/ubuntu/ noble-security main restricted universe",
	]


def test_populate_rootfs_contents(classic_ctx, recorder) -> None:
	ctx = classic_ctx
	ctx.definition = definition(customization={})
	chroot = ctx.get_chroot()
	with open(os.path.join(chroot, "etc", "resolv.conf.tmp"), "w") as f:
		f.write("")
	# cp is recorded, lay out what it would have copied
	os.makedirs(os.path.join(ctx.get_rootfs(), "etc"))
	with open(os.path.join(ctx.get_rootfs(), "etc", "fstab"), "w") as f:
		f.write("# UNCONFIGURED FSTAB\n")
	classic.populate_rootfs_contents(ctx)
	assert recorder.commands == [["cp", "-a", f"{chroot}/.", ctx.get_rootfs()]]
	assert os.path.exists(os.path.join(chroot, "etc", "resolv.conf"))
	assert not os.path.exists(os.path.join(chroot, "etc", "resolv.conf.tmp"))
	with open(os.path.join(ctx.get_rootfs(), "etc", "fstab")) as f:
		assert f.read() == "LABEL=writable\t/\text4\tdiscard,errors=remount-ro\t0\t1\n"


# ── Artifacts ───────────────────────────────────────────────────────


def test_generate_package_manifest(classic_ctx, recorder) -> None:
	ctx = classic_ctx
	ctx.definition = definition(artifacts={"manifest": {"name": "server.manifest"}})
	recorder.outputs["chroot"] = "bash 5.2\napt 2.7\n"
	generate_package_manifest(ctx)
	assert recorder.commands[0][:3] == ["chroot", ctx.get_rootfs(), "dpkg-query"]
	with open(os.path.join(ctx.get_output(), "server.manifest")) as f:
		assert f.read() == "bash 5.2\napt 2.7\n"


def test_generate_rootfs_tarball(classic_ctx) -> None:
	ctx = classic_ctx
	os.makedirs(os.path.join(ctx.get_rootfs(), "etc"))
	with open(os.path.join(ctx.get_rootfs(), "etc", "hostname"), "w") as f:
		f.write("ubuntu\n")
	ctx.definition = definition(artifacts={"rootfs-tarball": {"name": "root.tar.gz", "compression": "gzip"}})
	generate_rootfs_tarball(ctx)
	with tarfile.open(os.path.join(ctx.get_output(), "root.tar.gz"), "r:gz") as tar:
		assert "etc/hostname" in tar.getnames()
