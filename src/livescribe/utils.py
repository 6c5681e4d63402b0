import os
import re
from pathlib import Path

import yaml

from .logger import get_logger

logger = get_logger(__name__)

# User config location (LIVESCRIBE_CONFIG wins over ./config.yaml)
DEFAULT_CONFIG_PATH = os.environ.get("LIVESCRIBE_CONFIG", "config.yaml")

SCHEMA_PATH = Path(__file__).parent / 'config_schema.yaml'

# Schema type names -> accepted Python types
SCHEMA_TYPES = {
    'str': str,
    'int': int,
    'float': (int, float),
    'bool': bool,
    'list': list,
}


def _is_leaf(node):
    return isinstance(node, dict) and 'type' in node


def schema_defaults(node):
    """Reduce a schema (or one of its sections) to its default values."""
    if not isinstance(node, dict):
        return node
    if 'value' in node:
        return node['value']
    return {key: schema_defaults(child) for key, child in node.items()}


def _lookup(data, keys):
    """Follow nested keys. Returns (found, value)."""
    for key in keys:
        if not isinstance(data, dict) or key not in data:
            return False, None
        data = data[key]
    return True, data


class ConfigManager:
    """Process-wide configuration: schema defaults overlaid with the user's config.yaml."""
    _instance = None

    def __init__(self):
        self.config = None
        self.schema = None

    @classmethod
    def initialize(cls, schema_path=None, config_path=None):
        if cls._instance is not None:
            raise RuntimeError("ConfigManager is already initialized")
        manager = cls()
        manager.schema = cls.load_config_schema(schema_path)
        manager.config = manager.load_default_config()
        manager.load_user_config(config_path or DEFAULT_CONFIG_PATH)
        cls._instance = manager

    @classmethod
    def reset(cls):
        """Drop the singleton so the next access reloads from disk."""
        cls._instance = None

    @classmethod
    def get_instance(cls) -> 'ConfigManager':
        if cls._instance is None:
            cls.initialize()
        if cls._instance.config is None:  # type: ignore
            cls._instance.config = {}  # type: ignore
        return cls._instance  # type: ignore

    @classmethod
    def get_config_section(cls, *keys):
        """Nested section as a dict; {} when any key is missing."""
        found, section = _lookup(cls.get_instance().config, keys)
        return section if found else {}

    @classmethod
    def get_config_value(cls, *keys):
        """Nested value; None when any key is missing."""
        found, value = _lookup(cls.get_instance().config, keys)
        return value if found else None

    @staticmethod
    def load_config_schema(schema_path=None):
        with open(schema_path or SCHEMA_PATH, 'r', encoding='utf-8') as file:
            return yaml.safe_load(file)

    def load_default_config(self):
        return {section: schema_defaults(node) for section, node in self.schema.items()}

    def _validate_config_value(self, value, schema_item, path):
        """True if value fits its schema leaf. None always fits (optional values)."""
        if not _is_leaf(schema_item) or value is None:
            return True

        expected = schema_item['type']
        accepted = SCHEMA_TYPES.get(expected)
        problem = None
        if accepted is not None:
            # bool is an int subclass; True is not a number here
            if not isinstance(value, accepted) or (isinstance(value, bool) and expected in ('int', 'float')):
                problem = f"should be {expected}, got {type(value).__name__}"
        if problem is None and 'options' in schema_item and value not in schema_item['options']:
            problem = f"value '{value}' is not one of {schema_item['options']}"

        if problem:
            logger.warning(f"Config validation: '{path}' {problem}. Using default.")
            return False
        return True

    def _merge(self, target, overrides, schema, path=""):
        """Overlay user values on target; invalid leaves fall back to the schema default."""
        for key, value in overrides.items():
            key_path = f"{path}.{key}" if path else key
            node = schema.get(key) if isinstance(schema, dict) else None
            if _is_leaf(node):
                target[key] = value if self._validate_config_value(value, node, key_path) else node.get('value')
            elif isinstance(value, dict) and isinstance(target.get(key), dict):
                self._merge(target[key], value, node, key_path)
            else:
                target[key] = value

    def load_user_config(self, config_path=DEFAULT_CONFIG_PATH):
        if not config_path or not os.path.isfile(config_path):
            return
        try:
            with open(config_path, 'r', encoding='utf-8') as file:
                user_config = yaml.safe_load(file) or {}
        except yaml.YAMLError as e:
            logger.error(f"Error in configuration file {config_path}: {e}. Using default configuration.")
            return
        if not isinstance(user_config, dict):
            logger.error(f"Configuration file {config_path} is not a mapping. Using default configuration.")
            return
        self._merge(self.config, user_config, self.schema)
        logger.info(f"Loaded user config from {config_path}")


class TextProcessor:
    """Helpers for cleaning and classifying recognized text."""

    # Bare acknowledgement / hesitation tokens that never become transcript lines
    ACKNOWLEDGEMENT_PATTERNS = [
        r'um+', r'uh+', r'ah+', r'eh+',
        r'hmm+', r'mm+', r'hm+', r'mhm', r'uh[- ]?huh',
    ]

    SILENCE_MARKER = "[silence]"

    @classmethod
    def is_acknowledgement(cls, text):
        """True when text is nothing but a filler token (punctuation ignored)."""
        stripped = re.sub(r'[\s.,!?…-]+', ' ', text or '').strip()
        if not stripped:
            return False
        for pattern in cls.ACKNOWLEDGEMENT_PATTERNS:
            if re.fullmatch(pattern, stripped, flags=re.IGNORECASE):
                return True
        return False

    @classmethod
    def is_silence_marker(cls, text):
        return (text or '').strip().lower() == cls.SILENCE_MARKER

    @staticmethod
    def normalize(text):
        """Trim and collapse whitespace."""
        if not text:
            return ""
        text = re.sub(r'\s+', ' ', text)
        text = re.sub(r'\s+([,.?!])', r'\1', text)  # Space before punctuation
        return text.strip()

    @staticmethod
    def count_words(text):
        return len(text.split()) if text else 0
