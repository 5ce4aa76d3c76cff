import os
from typing import Self
from logging import getLogger
from ubuntu_image.lib.serializable import SerializableDict
log = getLogger(__name__)


class MountPoint(SerializableDict):
	"""
	One mount made by a build step, undone at cleanup
	"""
	source: str
	target: str
	fstype: str
	options: str

	def ismount(self) -> bool:
		return os.path.ismount(self.target)

	def mount_args(self) -> list[str]:
		args = ["mount"]
		if self.fstype: args.extend(["-t", self.fstype])
		if self.options: args.extend(["-o", self.options])
		args.extend([self.source, self.target])
		return args

	def mount(self, ctx) -> Self:
		os.makedirs(self.target, mode=0o0755, exist_ok=True)
		ret = ctx.run_external(self.mount_args())
		if ret != 0: raise OSError(f"mount {self.target} failed")
		log.debug(f"mounted {self.source} on {self.target}")
		return self

	def umount(self, ctx) -> Self:
		if not self.ismount(): return self
		ret = ctx.run_external(["umount", "--recursive", self.target])
		if ret != 0: raise OSError(f"umount {self.target} failed")
		log.debug(f"unmounted {self.target}")
		return self

	def __init__(
		self,
		source: str = None,
		target: str = None,
		fstype: str = None,
		options: str = None,
	):
		self.source = source or "none"
		self.target = os.path.realpath(target) if target else ""
		self.fstype = fstype or ""
		self.options = options or ""
		super().__init__()
