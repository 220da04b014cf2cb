"""Directory processors run by crawler consumers."""

from dircrawl.proc.directory import FilesystemDirectoryProcessor, ScanResult

__all__ = ["FilesystemDirectoryProcessor", "ScanResult"]
