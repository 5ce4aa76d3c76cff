from typing import Self


class Serializable:
	def serialize(self) -> None | bool | int | float | str | tuple | list | dict: pass

	def to_json(self, **kw) -> str:
		from ubuntu_image.lib.json import dumps
		return dumps(self.serialize(), **kw)

	@property
	def class_path(self) -> str:
		ret = self.__class__.__module__ or ""
		if len(ret) > 0: ret += "."
		ret += self.__class__.__qualname__
		return ret

	def __str__(self) -> str:
		j = self.to_json(indent=2).strip()
		return f"{self.class_path}({j})"

	def __repr__(self) -> str:
		j = self.to_json().strip()
		return f"{self.class_path}({j})"


class SerializableDict(Serializable):
	"""
	Object stored as a dict with one key per public attribute
	"""

	@classmethod
	def _is_field(cls, key: str) -> bool:
		if key.startswith("_"): return False
		if key.isupper(): return False
		attr = getattr(cls, key, None)
		if isinstance(attr, property): return False
		if callable(attr): return False
		return True

	def to_dict(self) -> dict:
		ret = {}
		for key in dir(self):
			if not self._is_field(key): continue
			val = getattr(self, key)
			if callable(val): continue
			ret[key] = val
		return ret

	def from_dict(self, o: dict) -> Self:
		"""
		Load attributes from a dict, keys this class does not know are ignored
		"""
		for key in o:
			if not self._is_field(key): continue
			if not hasattr(self, key): continue
			setattr(self, key, o[key])
		return self

	def serialize(self) -> dict:
		return self.to_dict()

	def __eq__(self, other) -> bool:
		if type(other) is not type(self): return NotImplemented
		return self.to_dict() == other.to_dict()

	def __init__(self, o: dict = None):
		if o: self.from_dict(o)
