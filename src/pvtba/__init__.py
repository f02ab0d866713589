from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("pvt-ba")
except PackageNotFoundError:
    __version__ = "unknown"
