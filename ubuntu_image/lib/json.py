import json
from uuid import UUID
from ubuntu_image.lib import serializable


class SerializableEncoder(json.JSONEncoder):
	"""
	Encode build state objects, UUIDs and sets
	"""
	def default(self, o):
		if isinstance(o, UUID): return str(o)
		if isinstance(o, serializable.Serializable): return o.serialize()
		if isinstance(o, (set, frozenset)): return sorted(o)
		return super().default(o)


def dump(obj, fp, **kw):
	return json.dump(obj, fp, cls=SerializableEncoder, **kw)


def dumps(obj, **kw) -> str:
	return json.dumps(obj, cls=SerializableEncoder, **kw)


load = json.load
loads = json.loads
JSONDecodeError = json.JSONDecodeError
