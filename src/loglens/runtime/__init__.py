"""Runtime helpers for embedding the engine in an application."""

from loglens.runtime.embedded import EmbeddedRuntime

__all__ = ["EmbeddedRuntime"]
