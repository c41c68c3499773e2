# Static version module; replaced by setuptools_scm in release builds.
__all__ = ["__version__", "__version_tuple__", "version", "version_tuple"]

version: str
__version__: str
__version_tuple__: tuple[int | str, ...]
version_tuple: tuple[int | str, ...]

__version__ = version = "0.1.0"
__version_tuple__ = version_tuple = (0, 1, 0)
