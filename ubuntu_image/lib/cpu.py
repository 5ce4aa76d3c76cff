import os
from logging import getLogger
log = getLogger(__name__)


def cpu_arch_name_map(name: str) -> str:
	"""
	Map cpu arch name to debian names
	cpu_arch_name_map("x86_64") = "amd64"
	cpu_arch_name_map("aarch64") = "arm64"
	cpu_arch_name_map("ARMv7l") = "armhf"
	"""
	match name.lower():
		case "x64" | "x86_64" | "amd64" | "intel64": return "amd64"
		case "i386" | "i486" | "i586" | "i686" | "x86" | "ia32": return "i386"
		case "arm64" | "aarch64" | "armv8" | "armv8l" | "aa64": return "arm64"
		case "arm" | "armhf" | "armv7" | "armv7l" | "armv7h": return "armhf"
		case "ppc64le" | "ppc64el": return "ppc64el"
		case "riscv64": return "riscv64"
		case "s390x": return "s390x"
		case _: return name.lower()


def cpu_arch_get_raw() -> str:
	"""
	Get current cpu arch
	cpu_arch_get_raw() = "x86_64"
	cpu_arch_get_raw() = "aarch64"
	"""
	return os.uname().machine


def cpu_arch_get() -> str:
	"""
	Get current cpu arch and map to debian names
	cpu_arch_get() = "amd64"
	cpu_arch_get() = "arm64"
	"""
	return cpu_arch_name_map(cpu_arch_get_raw())


def cpu_arch_compatible(target: str, current: str = None) -> bool:
	"""
	Can current cpu run binaries built for target without emulation
	cpu_arch_compatible("amd64", "x86_64") = True
	cpu_arch_compatible("i386", "x86_64") = True
	cpu_arch_compatible("arm64", "x86_64") = False
	"""
	if current is None: current = cpu_arch_get_raw()
	cur = cpu_arch_name_map(current)
	tgt = cpu_arch_name_map(target)
	if tgt == cur: return True
	return (cur, tgt) in [("amd64", "i386"), ("arm64", "armhf")]
