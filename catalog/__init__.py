"""Image catalog core: metadata cache and duplicate detection over Cloudflare Images."""

__version__ = "0.3.0"
