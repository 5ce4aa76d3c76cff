class DiskTypes:
	"""
	Table of (code, name) pairs for partition type codes
	"""
	types: list[tuple] = []

	@classmethod
	def parse(cls, t):
		"""
		Convert a literal type code, None when t is not one
		"""
		return None

	@classmethod
	def lookup_one_id(cls, t):
		"""
		Resolve a type name or literal code to its code
		lookup_one_id("linux") = 0x83 for MBR
		"""
		if type(t) is str:
			name = t.strip().lower()
			for code, n in cls.types:
				if n == name: return code
		return cls.parse(t)
