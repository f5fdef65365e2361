"""Administration modules for server identity, branding and hosted files."""

from .branding import BrandingModule
from .files import FilesModule
from .general import GeneralModule

__all__ = ["BrandingModule", "FilesModule", "GeneralModule"]
