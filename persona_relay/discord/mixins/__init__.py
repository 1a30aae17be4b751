from .callback_mixin import CallbackMixin
from .relay_mixin import RelayMixin

__all__ = ["CallbackMixin", "RelayMixin"]
