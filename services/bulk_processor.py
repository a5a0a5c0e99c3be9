"""
Bulk scan processor.

Applies one action to many package codes and returns one outcome per code.

Online:  all valid codes go to the package API in one request; the server
         answers with a per-code result list.
Offline: every code is queued as its own pending action through the
         executor (or the whole online request failed on connectivity).

Whatever happens, every distinct code in the batch gets exactly one
BulkItemResult, and the summary is computed from those items:

    total == successful + failed, successful counts applied + queued

Repeated codes are collapsed into their first occurrence and listed in
BulkResult.duplicate_codes, so total counts distinct codes.

Every code gets its idempotency token before the request is sent. If the
request fails on connectivity the same tokens go into the pending queue, so
replaying a batch the server already applied is answered as a duplicate.

The server's own summary is only compared against its result list; a
mismatch is logged and flagged, never trusted.
"""

from __future__ import annotations

import uuid
from collections import OrderedDict
from typing import Dict, Any, Iterable, Optional

from core.exceptions import ApplicationError, InvalidPackageCodeError, NetworkError
from models.outcome import BulkItemResult, BulkResult, OutcomeStatus
from models.package import Operator, normalize_package_code
from models.scan_action import ActionType, ScanMetadata
from modules import action_catalog
from logging_config import get_logger


logger = get_logger(__name__)

MISSING_RESULT_CODE = "MISSING_RESULT"


class BulkScanProcessor:
    """Processes bulk scans with per-code partial-failure outcomes."""

    def __init__(self, api_client, executor, connectivity):
        self._api = api_client
        self._executor = executor
        self._connectivity = connectivity

    def process_bulk(
        self,
        codes: Iterable[str],
        action_type: str,
        operator: Operator,
        metadata: Optional[ScanMetadata] = None,
    ) -> BulkResult:
        """
        Apply one action to a batch of package codes.

        Codes are normalized and de-duplicated (first occurrence wins);
        malformed codes are rejected locally and never sent.

        Args:
            codes: Scanned package codes
            action_type: Action applied to every code
            operator: Acting operator
            metadata: Shared scan metadata (created if not supplied)

        Returns:
            BulkResult with one item per distinct code
        """
        result = BulkResult(action_type=str(action_type))
        slots: "OrderedDict[str, Optional[BulkItemResult]]" = OrderedDict()

        for raw in codes:
            try:
                code = normalize_package_code(raw)
            except InvalidPackageCodeError as e:
                key = (raw or "").strip() or repr(raw)
                if key in slots:
                    result.duplicate_codes.append(key)
                else:
                    slots[key] = BulkItemResult(
                        package_code=key,
                        status=OutcomeStatus.REJECTED,
                        message=e.message,
                        error_code="INVALID_CODE",
                    )
                continue
            if code in slots:
                result.duplicate_codes.append(code)
            else:
                slots[code] = None

        if result.duplicate_codes:
            logger.info(f"Collapsed {len(result.duplicate_codes)} repeated codes in bulk batch")

        valid_codes = [code for code, item in slots.items() if item is None]

        reason = action_catalog.bulk_refusal(action_type, operator.role)
        if reason is not None:
            for code in valid_codes:
                slots[code] = BulkItemResult(
                    package_code=code,
                    status=OutcomeStatus.REJECTED,
                    message=reason,
                    error_code="ILLEGAL_TRANSITION",
                )
            result.items = list(slots.values())
            logger.warning(f"Bulk scan rejected: {reason}")
            return result

        action_value = ActionType.parse(action_type).value
        result.action_type = action_value
        metadata = (metadata or self._executor.build_metadata()).for_bulk()

        if valid_codes:
            logger.info(f"Bulk {action_value} for {len(valid_codes)} packages as {operator.role}")

            # One token per code, reused if the batch falls back to the queue
            tokens = OrderedDict((code, str(uuid.uuid4())) for code in valid_codes)

            submitted = False
            if self._connectivity.is_online:
                submitted = self._submit_online(tokens, action_value, operator, metadata, slots, result)

            if not submitted:
                result.offline = True
                self._queue_offline(tokens, action_value, operator, metadata, slots)

        result.items = list(slots.values())
        summary = result.summary()
        logger.info(
            f"Bulk {action_value} finished: {summary['successful']}/{summary['total']} successful "
            f"({summary['queued']} queued), {summary['failed']} failed"
        )
        return result

    def _submit_online(
        self,
        tokens: "OrderedDict[str, str]",
        action_type: str,
        operator: Operator,
        metadata: ScanMetadata,
        slots: "OrderedDict[str, Optional[BulkItemResult]]",
        result: BulkResult,
    ) -> bool:
        """
        Send the batch in one request and fill in the per-code slots.

        Each code carries its own idempotency token, so a batch the server
        applied before the connection dropped is recognized on replay.

        Returns:
            False if the request failed on connectivity (caller falls back
            to queuing), True otherwise
        """
        codes = list(tokens)
        try:
            response = self._api.submit_bulk(
                codes, action_type, operator.to_dict(), metadata.to_dict(), idempotency_keys=dict(tokens)
            )
        except NetworkError as e:
            logger.warning(f"Bulk request failed on connectivity, queuing individually: {e.message}")
            return False
        except ApplicationError as e:
            logger.warning(f"Bulk request rejected by server: {e.message}")
            for code in codes:
                slots[code] = BulkItemResult(
                    package_code=code,
                    status=OutcomeStatus.FAILED,
                    message=e.message,
                    error_code=e.error_code,
                )
            return True

        by_code: Dict[str, Dict[str, Any]] = {}
        for entry in response["results"]:
            if not isinstance(entry, dict):
                continue
            entry_code = str(entry.get("package_code") or "").strip().upper()
            if entry_code in slots and slots[entry_code] is None and entry_code not in by_code:
                by_code[entry_code] = entry
            else:
                logger.warning(f"Ignoring unexpected bulk result entry for '{entry_code}'")

        for code in codes:
            entry = by_code.get(code)
            if entry is None:
                slots[code] = BulkItemResult(
                    package_code=code,
                    status=OutcomeStatus.FAILED,
                    message="No result returned for this package",
                    error_code=MISSING_RESULT_CODE,
                )
                continue

            if entry.get("success"):
                confirmed = self._executor.apply_confirmation(
                    code, action_type, operator.role, {"new_state": entry.get("new_state")}
                )
                new_state = entry.get("new_state") or (confirmed.snapshot.state if confirmed else None)
                slots[code] = BulkItemResult(
                    package_code=code,
                    status=OutcomeStatus.APPLIED,
                    message=entry.get("message") or f"{action_type} applied",
                    new_state=new_state,
                    token=tokens[code],
                )
            else:
                slots[code] = BulkItemResult(
                    package_code=code,
                    status=OutcomeStatus.FAILED,
                    message=entry.get("message") or "Rejected by server",
                    error_code=entry.get("error_code") or "",
                    token=tokens[code],
                )

        result.server_summary_mismatch = self._summary_mismatch(response.get("summary") or {}, by_code)
        return True

    def _queue_offline(
        self,
        tokens: "OrderedDict[str, str]",
        action_type: str,
        operator: Operator,
        metadata: ScanMetadata,
        slots: "OrderedDict[str, Optional[BulkItemResult]]",
    ) -> None:
        for code, token in tokens.items():
            outcome = self._executor.queue_action(code, action_type, operator, metadata, token=token)
            slots[code] = BulkItemResult.from_outcome(outcome)

    @staticmethod
    def _summary_mismatch(summary: Dict[str, Any], entries: Dict[str, Dict[str, Any]]) -> bool:
        if not summary:
            return False

        expected = {
            "total": len(entries),
            "successful": sum(1 for e in entries.values() if e.get("success")),
            "failed": sum(1 for e in entries.values() if not e.get("success")),
        }
        mismatched = {}
        for key, value in expected.items():
            reported = summary.get(key)
            if reported is None:
                continue
            try:
                if int(reported) != value:
                    mismatched[key] = (reported, value)
            except (TypeError, ValueError):
                mismatched[key] = (reported, value)

        if mismatched:
            logger.warning(f"Server bulk summary disagrees with its results (reported, counted): {mismatched}")
            return True
        return False
