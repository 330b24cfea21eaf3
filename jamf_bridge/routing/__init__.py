from .families import EndpointFamily, classify_path

__all__ = ["EndpointFamily", "classify_path"]
