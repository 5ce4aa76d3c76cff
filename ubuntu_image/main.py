import logging
from sys import stdout, stderr
from argparse import ArgumentParser, Namespace
from ubuntu_image.lib.config import ConfigError
from ubuntu_image.machine.options import (
	CommonOptions, MachineOptions, SnapOptions, ClassicOptions, PackOptions,
)
from ubuntu_image.machine.state import StateMachine
from ubuntu_image.machine.snap import SnapVariant
from ubuntu_image.machine.classic import ClassicVariant
from ubuntu_image.machine.pack import PackVariant
log = logging.getLogger(__name__)


VERSION = "3.0.0"


class Parser(ArgumentParser):
	"""
	Argument parser exiting with 1 on usage errors
	"""
	def error(self, message: str):
		self.print_usage(stderr)
		self.exit(1, f"{self.prog}: error: {message}\n")


def common_parser() -> Parser:
	parser = Parser(add_help=False)
	level = parser.add_mutually_exclusive_group()
	level.add_argument("-d", "--debug",   help="Enable debug logging", default=False, action='store_true')
	level.add_argument("-v", "--verbose", help="Enable verbose logging", default=False, action='store_true')
	level.add_argument("-q", "--quiet",   help="Only log warnings and errors", default=False, action='store_true')
	parser.add_argument("-O", "--output-dir",      help="Folder to write images into")
	parser.add_argument("-i", "--image-size",      help="Image size, SIZE or VOLUME:SIZE,...")
	parser.add_argument("--disk-info",             help="File copied to .disk/info in the rootfs")
	parser.add_argument("--hooks-directory",       help="Folder of build hooks", action='append', default=[])
	parser.add_argument("--sector-size",           help="Sector size of the image", type=int, choices=[512, 4096])
	parser.add_argument("-c", "--channel",         help="Snap channel to install from")
	steps = parser.add_mutually_exclusive_group()
	steps.add_argument("-u", "--until",            help="Stop before running this step")
	steps.add_argument("-t", "--thru",             help="Stop after running this step")
	parser.add_argument("-w", "--workdir",         help="Work directory holding the build state")
	parser.add_argument("-r", "--resume",          help="Continue a build from its work directory", default=False, action='store_true')
	return parser


def build_parser() -> Parser:
	parser = Parser(
		prog="ubuntu-image",
		description="Generate a bootable disk image",
	)
	parser.add_argument("--version", action="version", version=f"ubuntu-image {VERSION}")
	subs = parser.add_subparsers(dest="command", required=True)
	parent = [common_parser()]

	snap = subs.add_parser("snap", help="Build an Ubuntu Core image", parents=parent)
	snap.add_argument("model_assertion",           help="Model assertion file", nargs="?")
	snap.add_argument("--snap",                    help="Extra snap, NAME[=CHANNEL]", action='append', default=[])
	snap.add_argument("--revision",                help="Pin a snap revision, NAME:REVISION", action='append', default=[])
	snap.add_argument("--cloud-init",              help="cloud-init user data file")
	snap.add_argument("--disable-console-conf",    help="Disable console-conf", default=False, action='store_true')
	snap.add_argument("--factory-image",           help="Boot the image in factory mode", default=False, action='store_true')
	snap.add_argument("--preseed",                 help="Preseed the image", default=False, action='store_true')

	classic = subs.add_parser("classic", help="Build a classic Ubuntu image", parents=parent)
	classic.add_argument("image_definition",       help="Image definition file", nargs="?")

	pack = subs.add_parser("pack", help="Pack a prepared gadget and rootfs", parents=parent)
	pack.add_argument("--gadget-dir",              help="Prepared gadget tree")
	pack.add_argument("--rootfs-dir",              help="Prepared root filesystem")
	pack.add_argument("--artifact-type",           help="Type of the image", choices=["raw"], default="raw")
	pack.add_argument("--architecture",            help="Architecture of the image")
	return parser


def parse_revisions(values: list[str]) -> dict[str, int]:
	"""
	parse_revisions(["core22:1234"]) = {"core22": 1234}
	"""
	ret = {}
	for value in values:
		name, sep, rev = value.partition(":")
		if not sep or not name or not rev.isdigit():
			raise ConfigError(f"invalid revision {value!r}, expected NAME:REVISION")
		ret[name] = int(rev)
	return ret


def setup_logging(args: Namespace):
	if args.debug:
		logging.root.setLevel(logging.DEBUG)
		log.debug("enabled debug logging")
	elif args.quiet:
		logging.root.setLevel(logging.WARNING)


def create_machine(args: Namespace) -> StateMachine:
	match args.command:
		case "snap":
			variant = SnapVariant(SnapOptions())
			variant.options.model_assertion = args.model_assertion or ""
			variant.options.snaps = args.snap
			variant.options.revisions = parse_revisions(args.revision)
			variant.options.cloud_init = args.cloud_init or ""
			variant.options.disable_console_conf = args.disable_console_conf
			variant.options.factory_image = args.factory_image
			variant.options.preseed = args.preseed
		case "classic":
			variant = ClassicVariant(ClassicOptions())
			variant.options.image_definition = args.image_definition or ""
		case "pack":
			variant = PackVariant(PackOptions())
			variant.options.gadget_dir = args.gadget_dir or ""
			variant.options.rootfs_dir = args.rootfs_dir or ""
			variant.options.artifact_type = args.artifact_type
			variant.options.architecture = args.architecture or ""
		case _: raise ConfigError(f"unknown command {args.command}")
	return StateMachine(variant)


def parse_options(args: Namespace) -> tuple[CommonOptions, MachineOptions]:
	common = CommonOptions()
	common.debug = args.debug
	common.verbose = args.verbose
	common.quiet = args.quiet
	common.output_dir = args.output_dir or ""
	common.image_size = args.image_size or ""
	common.disk_info = args.disk_info or ""
	common.hooks_directories = args.hooks_directory
	common.sector_size = args.sector_size
	common.channel = args.channel or ""
	flags = MachineOptions()
	flags.workdir = args.workdir or ""
	flags.until = args.until or ""
	flags.thru = args.thru or ""
	flags.resume = args.resume
	return common, flags


def execute(machine: StateMachine, common: CommonOptions, flags: MachineOptions) -> int:
	"""
	Drive one build and report its outcome as an exit status
	"""
	ret = 0
	try:
		machine.set_common_options(common, flags)
		machine.setup()
		machine.run()
	except Exception as e:
		log.debug("build failed", exc_info=True)
		log.error(f"Error: {e}")
		ret = 1
	finally:
		try: machine.teardown()
		except Exception as e:
			log.error(f"Error: {e}")
			ret = 1
	return ret


def main(argv: list[str] = None) -> int:
	logging.basicConfig(stream=stdout, level=logging.INFO)
	args = build_parser().parse_args(argv)
	setup_logging(args)
	try:
		machine = create_machine(args)
		common, flags = parse_options(args)
	except ConfigError as e:
		log.error(f"Error: {e}")
		return 1
	return execute(machine, common, flags)
