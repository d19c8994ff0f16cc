"""DBOS configuration and initialization."""

import os
from dbos import DBOS, DBOSConfig

from turnguard.config import settings

# Bump when workflow step order changes so old runs are not recovered
WORKFLOW_VERSION = "1"

dbos_config: DBOSConfig = {
    "name": "turnguard",
    "system_database_url": os.environ.get("DBOS_SYSTEM_DATABASE_URL") or settings.database_url,
    "application_version": WORKFLOW_VERSION,
}

# Initialize DBOS - must be done before defining workflows
DBOS(config=dbos_config)
