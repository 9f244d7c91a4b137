from .loader_manager import LoaderManager

__all__ = ["LoaderManager"]
