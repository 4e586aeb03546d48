from .debug_bundle import create_debug_bundle, has_debug_artifacts

__all__ = ["create_debug_bundle", "has_debug_artifacts"]
