"""Bootstrap sequencer: ordered, idempotent initialization of the store."""

from datastore_custodian.bootstrap.sequencer import BootstrapReport, BootstrapSequencer
from datastore_custodian.bootstrap.steps import BootstrapStep, build_default_steps, resolve_model

__all__ = [
    "BootstrapReport",
    "BootstrapSequencer",
    "BootstrapStep",
    "build_default_steps",
    "resolve_model",
]
