"""Database models package."""
from app.db.models.import_job import ImportJob
from app.db.models.material import Material

__all__ = ["ImportJob", "Material"]
