"""Shared constants for queue naming and defaults."""

WORKFLOW_QUEUE_PREFIX = "__wkf_workflow_"
STEP_QUEUE_PREFIX = "__wkf_step_"

DEFAULT_VISIBILITY_TIMEOUT = 300
DEFAULT_WAIT_SECONDS = 20
DEFAULT_BATCH_SIZE = 10

# SQS limits: visibility may not pass 12 hours from the receive call, and a
# send may be delayed by at most 15 minutes.
SQS_MAX_VISIBILITY_EXTENSION = 43200 - DEFAULT_VISIBILITY_TIMEOUT
SQS_MAX_DELAY = 900

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_REPLAY_MAX_ATTEMPTS = 5
DEFAULT_POLL_ERROR_BACKOFF = 5.0

# Name under which sleeps are counted when deriving wait ids.
SLEEP_KEY_NAME = "sleep"
