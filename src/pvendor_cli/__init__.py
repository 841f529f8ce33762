"""Profile Vendor: dependency vendoring for compliance profiles."""

from .version import __version__
