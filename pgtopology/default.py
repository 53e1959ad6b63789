# Copyright (c) 2023 Aiven, Helsinki, Finland. https://aiven.io/
from typing import Final

CONFIG_FILE: Final[str] = "pgtopology.json"
SCHEMA_PREFIX: Final[str] = "pgtopology_"
SLOT_NAME_FORMAT: Final[str] = "pgtopology_slot_{node}"
APPLICATION_NAME: Final[str] = "pgtopology"
BACKUP_LABEL: Final[str] = "pgtopology base backup"

MIN_SUPPORTED_VERSION: Final[str] = "9.3"
MIN_SUPPORTED_VERSION_NUM: Final[int] = 90300
REPLICATION_SLOTS_VERSION_NUM: Final[int] = 90400
TABLESPACE_MAPPING_VERSION_NUM: Final[int] = 90400
WAL_KEEP_SIZE_VERSION_NUM: Final[int] = 130000
RECOVERY_SIGNAL_VERSION_NUM: Final[int] = 120000

DEFAULT_DBNAME: Final[str] = "postgres"
DEFAULT_PRIMARY_PORT: Final[str] = "5432"
WAL_KEEP_SEGMENTS: Final[str] = "5000"
WAL_SEGMENT_SIZE_MB: Final[int] = 16
MASTER_RESPONSE_TIMEOUT: Final[float] = 60.0
PROMOTE_CHECK_TIMEOUT: Final[int] = 60
PROMOTE_CHECK_INTERVAL: Final[int] = 2
PRIMARY_WAIT_INTERVAL: Final[float] = 2.0

WITNESS_PORT: Final[str] = "5499"
WITNESS_SUPERUSER: Final[str] = "postgres"

RSYNC_OPTIONS: Final[str] = "--archive --checksum --compress --progress --rsh=ssh"
