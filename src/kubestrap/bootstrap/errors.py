# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubestrap/bootstrap/errors.py
from __future__ import annotations


class BootstrapError(RuntimeError):
    pass


# ---------------------------------------------------------------------
# Step level (classified by the StepExecutor, never raised past a role)
# ---------------------------------------------------------------------
class TransientActionError(BootstrapError):
    """Retried with backoff by the StepExecutor."""


class ActionTimeoutError(TransientActionError, TimeoutError):
    """A remote call exceeded its per-step timeout."""


class PermanentActionError(BootstrapError):
    """Never retried: the action itself detected an invalid configuration."""


class CommandFailedError(TransientActionError):
    def __init__(self, command: str, exit_code: int, stderr: str = ""):
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr
        detail = stderr.strip().splitlines()[-1] if stderr.strip() else ""
        msg = f"command exited with status {exit_code}"
        if detail:
            msg += f": {detail}"
        super().__init__(msg)


# ---------------------------------------------------------------------
# Run level (fatal)
# ---------------------------------------------------------------------
class CredentialMissingError(BootstrapError):
    pass


class StoreWriteError(BootstrapError):
    pass


class ConvergenceStateError(BootstrapError):
    pass


# ---------------------------------------------------------------------
# Plan / inventory validation
# ---------------------------------------------------------------------
class DuplicateStepError(ValueError):
    pass


class UnknownStepDependencyError(ValueError):
    pass


class StepOrderError(ValueError):
    pass


class InventoryError(ValueError):
    pass
