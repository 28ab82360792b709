"""
Durable key-value stores for reports and settings.

JsonFileStore keeps one JSON file per key; LayeredStore chains several stores
so a failing tier (read-only disk, full volume) does not lose a write.
"""

import json
import os
import re
from abc import ABC, abstractmethod

_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9._-]")


class KeyValueStore(ABC):
    @abstractmethod
    def get(self, key):
        """Return the stored value or None"""

    @abstractmethod
    def set(self, key, value):
        """Store a JSON-serialisable value"""

    @abstractmethod
    def delete(self, key):
        """Remove a key; missing keys are ignored"""


class MemoryStore(KeyValueStore):
    def __init__(self):
        self._data = {}

    def get(self, key):
        value = self._data.get(key)
        # Round-trip through JSON so callers never share mutable state with the store
        return json.loads(value) if value is not None else None

    def set(self, key, value):
        self._data[key] = json.dumps(value)

    def delete(self, key):
        self._data.pop(key, None)


class JsonFileStore(KeyValueStore):
    def __init__(self, directory):
        self.directory = directory

    def _path(self, key):
        return os.path.join(self.directory, _UNSAFE_KEY_CHARS.sub('_', key) + '.json')

    def get(self, key):
        path = self._path(key)
        if not os.path.exists(path):
            return None
        with open(path, 'r', encoding='utf-8') as f:
            return json.load(f)

    def set(self, key, value):
        os.makedirs(self.directory, exist_ok=True)
        path = self._path(key)
        tmp_path = path + '.tmp'
        with open(tmp_path, 'w', encoding='utf-8') as f:
            json.dump(value, f, ensure_ascii=False, indent=2)
        os.replace(tmp_path, path)

    def delete(self, key):
        path = self._path(key)
        if os.path.exists(path):
            os.remove(path)


class LayeredStore(KeyValueStore):
    """
    Reads return the value from the first layer that has the key. Writes and
    deletes go to every layer and succeed if at least one layer accepted them.
    """

    def __init__(self, layers):
        if not layers:
            raise ValueError("LayeredStore needs at least one layer")
        self.layers = list(layers)

    def get(self, key):
        for layer in self.layers:
            try:
                value = layer.get(key)
            except (OSError, ValueError) as e:
                print(f"Storage layer {type(layer).__name__} failed to read '{key}': {e}")
                continue
            if value is not None:
                return value
        return None

    def _apply_everywhere(self, action, key, *args):
        errors = []
        for layer in self.layers:
            try:
                getattr(layer, action)(key, *args)
            except OSError as e:
                print(f"Storage layer {type(layer).__name__} failed to {action} '{key}': {e}")
                errors.append(e)
        if len(errors) == len(self.layers):
            raise errors[-1]

    def set(self, key, value):
        self._apply_everywhere('set', key, value)

    def delete(self, key):
        self._apply_everywhere('delete', key)
