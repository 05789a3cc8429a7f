"""Gallery error types."""


class GalleryError(Exception):
    """Base class for gallery errors."""


class ImageNotFoundError(GalleryError):
    """Requested directory or file is absent, or the candidate pool is empty."""


class ManifestWriteConflict(GalleryError):
    """The manifest document could not be written after bounded retries."""
