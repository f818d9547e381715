# Importing these modules registers their outbox handlers.
from orderflow.services import archiver, ratings  # noqa: F401
