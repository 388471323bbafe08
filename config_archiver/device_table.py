"""
Device Table
============

Concurrency-safe registry of device models and devices. Values are copied
on the way in and on the way out, so callers never share mutable state
with the table.
"""

import logging
import threading
from typing import Callable, Dict, List

from .device import Device
from .error_handling import DeviceExists, DeviceNotFound, ModelExists, ModelNotFound
from .models import Model

# Configure logging
logger = logging.getLogger(__name__)


class DeviceTable:
    """Device id -> device mapping plus model lookup."""

    def __init__(self):
        self._models: Dict[str, Model] = {}
        self._devices: Dict[str, Device] = {}
        self._lock = threading.RLock()

    # Models

    def set_model(self, model: Model):
        """Register a model; each name can be registered once."""
        with self._lock:
            if model.name in self._models:
                raise ModelExists(f"set_model: model exists: '{model.name}'")
            self._models[model.name] = Model(model.name, model.default_attr.copy())
        logger.debug(f"set_model: registered model '{model.name}'")

    def get_model(self, name: str) -> Model:
        """Get a model by name."""
        with self._lock:
            model = self._models.get(name)
        if model is None:
            raise ModelNotFound(f"get_model: model not found: '{name}'")
        return Model(model.name, model.default_attr.copy())

    def list_models(self) -> List[str]:
        with self._lock:
            return sorted(self._models)

    # Devices

    def get_device(self, device_id: str) -> Device:
        """Get a copy of a device."""
        with self._lock:
            device = self._devices.get(device_id)
            if device is None:
                raise DeviceNotFound(f"get_device: not found: '{device_id}'")
            return device.copy()

    def set_device(self, device: Device):
        """Insert a new device."""
        with self._lock:
            if device.model not in self._models:
                raise ModelNotFound(f"set_device: device '{device.id}': model not found: '{device.model}'")
            if device.id in self._devices:
                raise DeviceExists(f"set_device: device exists: '{device.id}'")
            self._devices[device.id] = device.copy()

    def update_device(self, device: Device):
        """Replace an existing device."""
        with self._lock:
            if device.id not in self._devices:
                raise DeviceNotFound(f"update_device: not found: '{device.id}'")
            self._devices[device.id] = device.copy()

    def modify_device(self, device_id: str, change: Callable[[Device], None]) -> Device:
        """Apply change to the stored device under the lock; returns a copy."""
        with self._lock:
            device = self._devices.get(device_id)
            if device is None:
                raise DeviceNotFound(f"modify_device: not found: '{device_id}'")
            change(device)
            return device.copy()

    def delete_device(self, device_id: str):
        """Mark a device as deleted; the row stays until purged."""
        with self._lock:
            device = self._devices.get(device_id)
            if device is None:
                raise DeviceNotFound(f"delete_device: not found: '{device_id}'")
            device.deleted = True

    def purge_device(self, device_id: str):
        """Remove a device row."""
        with self._lock:
            if self._devices.pop(device_id, None) is None:
                raise DeviceNotFound(f"purge_device: not found: '{device_id}'")

    def list_devices(self) -> List[Device]:
        """Copies of all devices, sorted by id."""
        with self._lock:
            return [self._devices[k].copy() for k in sorted(self._devices)]

    def find_device_free_id(self, prefix: str) -> str:
        """Return prefix + smallest non-negative integer not yet in use."""
        with self._lock:
            n = 0
            while f"{prefix}{n}" in self._devices:
                n += 1
            return f"{prefix}{n}"

    def __len__(self) -> int:
        with self._lock:
            return len(self._devices)
