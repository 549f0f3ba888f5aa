from __future__ import annotations

import logging
from dataclasses import dataclass, field

from mes_backend.filename_keys import parse_composite_key
from mes_backend.models import PairingLink, TestRecord

logger = logging.getLogger(__name__)


@dataclass
class PairingOutcome:
    links: list[PairingLink] = field(default_factory=list)
    unpaired: int = 0

    @property
    def paired_count(self) -> int:
        return len(self.links)


def build_record_key(record: TestRecord, timestamp: str) -> str:
    return f"{record.serial_number}_{timestamp}_{record.station}"


def resolve_pairings(records: list[TestRecord], source_filename: str, key_map: dict[str, str]) -> PairingOutcome:
    """Link every record of one source file to the log stored under the same composite key.

    A miss is not an error; the record stays valid and is only counted as unpaired.

    Records of one file that share serial and station get the same record key,
    so the primary store keeps only the last of their links while
    `paired_count` still counts each record.
    """

    outcome = PairingOutcome()
    composite = parse_composite_key(source_filename)
    log_entry_id = key_map.get(composite.key) if composite is not None else None
    if composite is None or log_entry_id is None:
        outcome.unpaired = len(records)
        return outcome

    for record in records:
        link = PairingLink(
            record_key=build_record_key(record, composite.timestamp),
            serial=record.serial_number,
            log_file_name=composite.log_file_name,
            log_entry_id=log_entry_id,
        )
        outcome.links.append(link)
        logger.debug("Paired %s with log entry %s", link.record_key, log_entry_id)
    return outcome
