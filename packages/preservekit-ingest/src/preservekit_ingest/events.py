"""Builders for the provenance events the recorder submits.

Events are generated once per object or file and stored on the record,
each with its own UUID, so resubmitting them after a partial failure
never creates duplicates in the catalog.
"""

from __future__ import annotations

import uuid

from preservekit_core.models import (
    ChecksumSource,
    EventOutcome,
    EventType,
    IngestFile,
    IngestObject,
    PremisEvent,
    utcnow,
)

DIGEST_OBJECT = "Python hashlib"
DIGEST_AGENT = "https://docs.python.org/3/library/hashlib.html"


def _event(
    event_type: EventType,
    detail: str,
    outcome_detail: str,
    agent: str,
    object_identifier: str,
    file_identifier: str = "",
    outcome: EventOutcome = EventOutcome.SUCCESS,
    outcome_information: str = "",
    obj: str = "",
) -> PremisEvent:
    return PremisEvent(
        identifier=str(uuid.uuid4()),
        event_type=event_type,
        date_time=utcnow(),
        detail=detail,
        outcome=outcome,
        outcome_detail=outcome_detail,
        outcome_information=outcome_information,
        object=obj,
        agent=agent,
        intellectual_object_identifier=object_identifier,
        generic_file_identifier=file_identifier,
    )


def object_events(ingest_object: IngestObject, agent: str) -> list[PremisEvent]:
    """Events for an object: creation and identifier only on first ingest."""
    obj = ingest_object
    events: list[PremisEvent] = []
    if not obj.is_reingest:
        events.append(_event(
            EventType.CREATION, "Object created", "Intellectual object created",
            agent, obj.identifier,
        ))
        events.append(_event(
            EventType.IDENTIFIER_ASSIGNMENT, "Assigned object identifier", obj.identifier,
            agent, obj.identifier, outcome_information="Institution domain + bag name",
        ))
    events.append(_event(
        EventType.INGESTION, "Copied files to preservation storage",
        f"{obj.file_count} files copied", agent, obj.identifier,
    ))
    events.append(_event(
        EventType.ACCESS_ASSIGNMENT, "Assigned access rights", obj.access(),
        agent, obj.identifier,
    ))
    return events


def file_events(ingest_file: IngestFile, agent: str) -> list[PremisEvent]:
    """Events for one file.

    Identifier assignment only for files the catalog does not know yet;
    ingestion is keyed to the first placement and replication to each of
    the others.
    """
    f = ingest_file
    events: list[PremisEvent] = []
    for checksum in f.checksums_from(ChecksumSource.INGEST):
        events.append(_event(
            EventType.DIGEST_CALCULATION, "Calculated fixity value",
            f"{checksum.algorithm}:{checksum.digest}", DIGEST_AGENT,
            f.object_identifier, f.identifier, obj=DIGEST_OBJECT,
        ))

    for checksum in f.checksums:
        if checksum.source not in (ChecksumSource.MANIFEST, ChecksumSource.TAG_MANIFEST):
            continue
        computed = f.get_checksum(ChecksumSource.INGEST, checksum.algorithm)
        matched = computed is not None and computed.digest == checksum.digest
        events.append(_event(
            EventType.FIXITY_CHECK, f"Fixity check against {checksum.source.value}",
            f"{checksum.algorithm}:{checksum.digest}", agent,
            f.object_identifier, f.identifier,
            outcome=EventOutcome.SUCCESS if matched else EventOutcome.FAILURE,
            outcome_information=(
                f"computed {computed.digest}" if computed is not None
                else f"no computed {checksum.algorithm} digest"
            ),
        ))

    if f.id == 0:
        events.append(_event(
            EventType.IDENTIFIER_ASSIGNMENT, "Assigned bag path identifier", f.identifier,
            agent, f.object_identifier, f.identifier,
            outcome_information="Object identifier + path in bag",
        ))
        primary_url = f.storage_records[0].url if f.storage_records else f.uuid
        events.append(_event(
            EventType.IDENTIFIER_ASSIGNMENT, "Assigned storage URL identifier", primary_url,
            agent, f.object_identifier, f.identifier,
            outcome_information="Storage URL",
        ))

    if f.storage_records:
        first, *secondary = f.storage_records
        events.append(_event(
            EventType.INGESTION, "Copied to preservation storage", first.url,
            agent, f.object_identifier, f.identifier,
            outcome_information=f"{first.provider}:{first.bucket}",
        ))
        for record in secondary:
            events.append(_event(
                EventType.REPLICATION, "Copied to replication storage", record.url,
                agent, f.object_identifier, f.identifier,
                outcome_information=f"{record.provider}:{record.bucket}",
            ))
    return events
