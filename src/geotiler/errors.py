"""Custom exception hierarchy for geotiler."""


class GeotilerError(Exception):
    """Base exception for all geotiler errors."""


class ParseError(GeotilerError):
    """Raised when a scene or options document cannot be loaded."""


class ValidationError(GeotilerError):
    """Raised when export inputs are rejected (empty scene, bad tile sizes, etc.)."""


class TilingError(GeotilerError):
    """Raised when partitioning leaves no geometry to export."""


class ExportError(GeotilerError):
    """Raised when GLB or tileset output fails."""
