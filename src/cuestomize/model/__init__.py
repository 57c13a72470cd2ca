"""CUE model providers."""

from cuestomize.model.provider import (
    CUE_MOD_DIR,
    OCIModelProvider,
    OCIProviderOptions,
    Provider,
)

__all__ = [
    "CUE_MOD_DIR",
    "OCIModelProvider",
    "OCIProviderOptions",
    "Provider",
]
