from uuid import UUID
from ubuntu_image.disk.layout.types import DiskTypes


class DiskTypesGPT(DiskTypes):
	@classmethod
	def parse(cls, t) -> UUID | None:
		if type(t) is UUID: return t
		if type(t) is str:
			try: return UUID(t.strip())
			except ValueError: return None
		return None

	# names accepted in place of a GUID
	types: list[tuple[UUID, str]] = [
		(UUID("C12A7328-F81F-11D2-BA4B-00A0C93EC93B"), "efi"),
		(UUID("C12A7328-F81F-11D2-BA4B-00A0C93EC93B"), "esp"),
		(UUID("21686148-6449-6E6F-744E-656564454649"), "bios-boot"),
		(UUID("9E1A2D38-C612-4316-AA26-8B49521E5A8B"), "powerpc-prep-boot"),
		(UUID("EBD0A0A2-B9E5-4433-87C0-68B6B72699C7"), "microsoft-basic-data"),
		(UUID("0657FD6D-A4AB-43C4-84E5-0933C84B4F4F"), "linux-swap"),
		(UUID("0FC63DAF-8483-4772-8E79-3D69D8477DE4"), "linux"),
		(UUID("4F68BCE3-E8CD-4DB1-96E7-FBCAF984B709"), "linux-root-x86-64"),
		(UUID("69DAD710-2CE4-4E3C-B16C-21A1D49ABED3"), "linux-root-arm"),
		(UUID("B921B045-1DF0-41C3-AF44-4C6F280D3FAE"), "linux-root-arm64"),
		(UUID("C31C45E6-3F39-412E-80FB-4809C4980599"), "linux-root-ppc64le"),
		(UUID("72EC70A6-CF74-40E6-BD49-4BDA08E8F224"), "linux-root-riscv64"),
		(UUID("5EEAD9A9-FE09-4A1E-A1D7-520D00531306"), "linux-root-s390x"),
		(UUID("BC13C2FF-59E6-4262-A352-B275FD6F7172"), "linux-extended-boot"),
	]
