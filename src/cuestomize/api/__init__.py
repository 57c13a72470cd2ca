"""Function configuration models: remote module, auth selector, KRM input."""

from cuestomize.api.krm_input import KRMInput, credential_from_secret
from cuestomize.api.remote_module import RemoteModule
from cuestomize.api.selector import Selector

__all__ = [
    "KRMInput",
    "RemoteModule",
    "Selector",
    "credential_from_secret",
]
