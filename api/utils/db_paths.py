"""Database path resolution for the CRM."""
from pathlib import Path

from config.settings import settings


def get_crm_db_path() -> str:
    """Get the path to the CRM database, creating its directory if needed."""
    db_path = Path(settings.resolved_crm_db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    return str(db_path)
