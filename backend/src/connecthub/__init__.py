"""Client core for the ConnectHub social backend."""

from .identity import Identity

__all__ = ["Identity"]
