import os
import shutil
import tempfile
from time import monotonic
from enum import Enum
from typing import Callable
from logging import getLogger
from ubuntu_image.lib import json
from ubuntu_image.lib.config import ConfigError
from ubuntu_image.lib.context import BuildContext
from ubuntu_image.machine.options import CommonOptions, MachineOptions, VariantOptions
log = getLogger(__name__)


CHECKPOINT_FILE = "ubuntu-image.json"


class StepError(RuntimeError):
	"""
	A build step failed, the original error is chained as __cause__
	"""
	step: str

	def __init__(self, step: str, error: BaseException):
		self.step = step
		super().__init__(f"step {step} failed: {error}")


class PersistenceError(OSError):
	"""
	The checkpoint could not be read or written
	"""
	pass


class MachineState(Enum):
	CREATED = "created"
	READY = "ready"
	RUNNING = "running"
	STOPPED = "stopped"
	COMPLETED = "completed"
	FAILED = "failed"
	TORN_DOWN = "torn-down"


class Step:
	"""
	A named function run against the build context
	"""
	name: str
	function: Callable[[BuildContext], None]

	def __init__(self, name: str, function: Callable[[BuildContext], None]):
		self.name = name
		self.function = function

	def __repr__(self) -> str:
		return f"Step({self.name})"


class Variant:
	"""
	What a build variant provides to the state machine
	"""
	name: str
	options: VariantOptions

	def validate(self, ctx: BuildContext):
		"""
		Check variant options once key options are final
		"""
		pass

	def prepare(self, ctx: BuildContext):
		"""
		Load anything the step list depends on
		"""
		pass

	def calculate_steps(self, ctx: BuildContext) -> list[Step]:
		raise NotImplementedError()


class StateMachine:
	"""
	Run the ordered steps of a build variant with checkpoint and resume
	"""
	variant: Variant
	common: CommonOptions
	flags: MachineOptions
	ctx: BuildContext | None
	steps: list[Step]
	state: MachineState

	"""
	Whether the work directory was created by us and goes away on success
	"""
	clean_work_dir: bool

	"""
	Work directory resolved at setup, empty before
	"""
	work_dir: str

	@property
	def checkpoint_path(self) -> str:
		return os.path.join(self.ctx.work, CHECKPOINT_FILE)

	def set_common_options(self, common: CommonOptions, flags: MachineOptions):
		if self.state != MachineState.CREATED:
			raise RuntimeError("options must be set before setup")
		self.common = common
		self.flags = flags

	def resolve_work_dir(self) -> str:
		workdir = self.flags.workdir
		if not workdir:
			workdir = tempfile.mkdtemp(prefix="ubuntu-image-")
			self.clean_work_dir = True
			log.debug(f"using ephemeral work directory {workdir}")
			return workdir
		if not os.path.isdir(workdir):
			if self.flags.resume:
				raise ConfigError(f"work directory {workdir} does not exist")
			os.makedirs(workdir, mode=0o0755)
		if not os.access(workdir, os.W_OK | os.X_OK):
			raise ConfigError(f"work directory {workdir} is not writable")
		return workdir

	def output_dir(self, workdir: str) -> str:
		"""
		Images of an ephemeral build land in the current directory
		"""
		if self.common.output_dir: return self.common.output_dir
		if self.clean_work_dir: return os.getcwd()
		return workdir

	def load_checkpoint(self, workdir: str) -> BuildContext:
		path = os.path.join(workdir, CHECKPOINT_FILE)
		if not os.path.exists(path):
			raise ConfigError(f"no checkpoint {CHECKPOINT_FILE} found in {workdir}")
		try:
			ctx = BuildContext.load(path)
		except (OSError, ValueError, TypeError) as e:
			raise PersistenceError(f"failed to read checkpoint {path}: {e}") from e
		if ctx.variant != self.variant.name:
			raise ConfigError(
				f"cannot resume a {ctx.variant} build as a {self.variant.name} build"
			)
		self.variant.options.restore_keys(ctx.options)
		ctx.work = workdir
		return ctx

	def save_checkpoint(self):
		try:
			self.ctx.save(self.checkpoint_path)
		except (OSError, TypeError, ValueError) as e:
			raise PersistenceError(f"failed to write checkpoint {self.checkpoint_path}: {e}") from e

	def validate_until_thru(self):
		names = [step.name for step in self.steps]
		for name in [self.flags.until, self.flags.thru]:
			if name and name not in names:
				raise ConfigError(f"state {name} is not a valid state name")

	def setup(self):
		if self.state != MachineState.CREATED:
			raise RuntimeError(f"setup called in state {self.state.value}")
		self.flags.set_defaults()
		self.variant.options.set_defaults()
		workdir = self.resolve_work_dir()
		self.work_dir = workdir
		if self.flags.resume:
			self.ctx = self.load_checkpoint(workdir)
			self.common.restore_keys(self.ctx.common)
		self.common.set_defaults()
		if not self.flags.resume:
			self.ctx = BuildContext(self.variant.name, workdir)
			self.ctx.output_dir = self.output_dir(workdir)
		self.ctx.common = self.common
		self.ctx.options = self.variant.options
		self.variant.validate(self.ctx)
		self.variant.prepare(self.ctx)
		self.steps = self.variant.calculate_steps(self.ctx)
		names = [step.name for step in self.steps]
		if len(set(names)) != len(names):
			raise RuntimeError(f"duplicate step names in {names}")
		if self.flags.resume:
			if names != self.ctx.steps:
				raise ConfigError(
					"the steps of this build differ from the build being resumed"
				)
			if self.ctx.next_step > len(names):
				raise PersistenceError(
					f"invalid steps taken count ({self.ctx.next_step}). "
					f"The state machine only have {len(names)} steps"
				)
		else:
			self.ctx.steps = names
			self.ctx.next_step = 0
		self.validate_until_thru()
		log.debug(f"calculated steps: {json.dumps(names)}")
		self.state = MachineState.READY

	def stop_before(self, step: Step) -> bool:
		until = self.flags.until
		return until == step.name and until != self.flags.thru

	def run(self):
		if self.state != MachineState.READY:
			raise RuntimeError(f"run called in state {self.state.value}")
		self.state = MachineState.RUNNING
		ctx = self.ctx
		while ctx.next_step < len(self.steps):
			step = self.steps[ctx.next_step]
			if self.stop_before(step):
				log.info(f"stopping before step {step.name}")
				self.save_checkpoint()
				self.state = MachineState.STOPPED
				return
			log.info(f"[{ctx.next_step}] {step.name}")
			start = monotonic()
			try:
				step.function(ctx)
			except Exception as e:
				self.state = MachineState.FAILED
				try: self.save_checkpoint()
				except PersistenceError as pe:
					log.error(f"{pe}")
				raise StepError(step.name, e) from e
			log.debug(f"duration: {monotonic() - start:.3f}s")
			ctx.next_step += 1
			self.save_checkpoint()
			if step.name == self.flags.thru:
				log.info(f"stopping after step {step.name}")
				self.state = MachineState.STOPPED
				return
		self.state = MachineState.COMPLETED

	def teardown(self):
		"""
		Release resources and drop an ephemeral work directory of a finished build
		"""
		if self.state == MachineState.TORN_DOWN: return
		last = self.state
		self.state = MachineState.TORN_DOWN
		if self.ctx is not None: self.ctx.cleanup()
		if not self.clean_work_dir: return
		# a setup that never finished left nothing to resume
		if last in [MachineState.COMPLETED, MachineState.CREATED]:
			log.debug(f"removing work directory {self.work_dir}")
			shutil.rmtree(self.work_dir)
		else:
			log.warning(f"build state kept in ephemeral work directory {self.work_dir}")

	def __init__(self, variant: Variant):
		self.variant = variant
		self.common = CommonOptions()
		self.flags = MachineOptions()
		self.ctx = None
		self.steps = []
		self.state = MachineState.CREATED
		self.clean_work_dir = False
		self.work_dir = ""
