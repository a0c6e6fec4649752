from .naming import create_slug, sanitize_description, sanitize_filename

__all__ = ["create_slug", "sanitize_description", "sanitize_filename"]
