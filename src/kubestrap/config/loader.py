# src/kubestrap/config/loader.py

import os
import yaml
from pathlib import Path
from pydantic import ValidationError

from ..bootstrap.errors import InventoryError
from .models import Inventory


def load_inventory(path: str | Path) -> Inventory:
    """
    Load an inventory file. Either a bare list of hosts:

        - {address: 10.0.0.10, role: control-plane, name: cp1}
        - {address: 10.0.0.11, role: worker}

    or a mapping with `hosts:` and optional `settings:`. JSON works too.
    """
    p = Path(path)
    try:
        raw = p.read_text()
    except OSError as exc:
        raise InventoryError(f"cannot read inventory {p}: {exc}") from exc

    # expand environment variables like ${SSH_KEY}
    expanded = os.path.expandvars(raw)

    try:
        data = yaml.safe_load(expanded)
    except yaml.YAMLError as exc:
        raise InventoryError(f"inventory {p} is not valid YAML: {exc}") from exc

    if isinstance(data, list):
        data = {"hosts": data}
    if not isinstance(data, dict):
        raise InventoryError(f"inventory {p} must be a list of hosts or a mapping with 'hosts'")

    try:
        return Inventory.model_validate(data)
    except ValidationError as exc:
        raise InventoryError(f"invalid inventory {p}:\n{exc}") from exc
