import os
import yaml
from logging import getLogger
from ubuntu_image.lib import json
log = getLogger(__name__)


class ConfigError(Exception):
	pass


def load_config_file(path: str) -> dict:
	"""
	Load one config (yaml/json) into a dict
	"""
	log.debug(f"try to open config {path}")
	if not os.path.exists(path):
		raise ConfigError(f"config {path} not found")
	try:
		with open(path, "r") as f:
			if path.endswith((".jsn", ".json")):
				log.debug(f"load {path} as json")
				loaded = json.load(f)
			else:
				log.debug(f"load {path} as yaml")
				loaded = yaml.safe_load(f)
	except (yaml.YAMLError, json.JSONDecodeError) as e:
		raise ConfigError(f"failed to parse {path}: {e}") from e
	log.info(f"loaded config {path}")
	if loaded is None: return {}
	if type(loaded) is not dict:
		raise ConfigError(f"config {path} is not a mapping")
	return loaded
