"""
Persona - Application Services

The impure edges of the person domain: ``CommandService`` on the write
side, ``QueryService`` and the projection runners on the read side.
"""
from services.command_service import CommandService
from services.query_service import (
    ProjectionRunner,
    ProjectionSubscriber,
    QueryService,
    ReadModelStores,
    default_runners,
    person_key,
    timeline_key,
)

__all__ = [
    "CommandService",
    "ProjectionRunner",
    "ProjectionSubscriber",
    "QueryService",
    "ReadModelStores",
    "default_runners",
    "person_key",
    "timeline_key",
]
