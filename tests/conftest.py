import os
import textwrap
import pytest
from pathlib import Path
from ubuntu_image.lib.utils import parse_cmd_args
from ubuntu_image.lib.context import BuildContext
from ubuntu_image.machine.options import CommonOptions


class Recorder:
	"""
	Stand-in for BuildContext.run_external that records every command
	"""
	def __init__(self):
		self.commands: list[list[str]] = []
		self.kwargs: list[dict] = []
		self.returns: dict[str, int] = {}
		self.outputs: dict[str, str] = {}

	def __call__(self, cmd, /, cwd=None, env=None, stdin=None, want_stdout=False):
		args = parse_cmd_args(cmd)
		self.commands.append(args)
		self.kwargs.append({"cwd": cwd, "env": env, "stdin": stdin})
		ret = self.returns.get(args[0], 0)
		if want_stdout: return (ret, self.outputs.get(args[0], ""))
		return ret

	def programs(self) -> list[str]:
		return [cmd[0] for cmd in self.commands]


@pytest.fixture
def recorder(monkeypatch) -> Recorder:
	rec = Recorder()
	monkeypatch.setattr(BuildContext, "run_external", rec)
	return rec


@pytest.fixture
def ctx(tmp_path: Path) -> BuildContext:
	work = tmp_path / "work"
	work.mkdir()
	c = BuildContext("pack", str(work))
	c.common = CommonOptions()
	c.common.set_defaults()
	return c


@pytest.fixture
def write_file(tmp_path: Path):
	"""
	Write dedented text below tmp_path and return its path
	"""
	def _write(name: str, content: str) -> str:
		path = tmp_path / name
		path.parent.mkdir(parents=True, exist_ok=True)
		path.write_text(textwrap.dedent(content))
		return str(path)
	return _write


PC_GADGET = """\
volumes:
  pc:
    bootloader: grub
    structure:
      - name: mbr
        type: mbr
        size: 440
        content:
          - image: pc-boot.img
      - name: BIOS Boot
        type: DA,21686148-6449-6E6F-744E-656564454649
        size: 1M
        offset: 1M
        offset-write: mbr+92
        content:
          - image: pc-core.img
      - name: EFI System
        type: EF,C12A7328-F81F-11D2-BA4B-00A0C93EC93B
        filesystem: vfat
        filesystem-label: system-boot
        size: 50M
        offset: 2M
        content:
          - source: grubx64.efi
            target: EFI/boot/grubx64.efi
          - source: rootfs:/boot/vmlinuz
            target: vmlinuz
"""


@pytest.fixture
def pc_gadget_yaml(write_file) -> str:
	return write_file(os.path.join("gadget", "meta", "gadget.yaml"), PC_GADGET)
