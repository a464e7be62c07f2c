"""
Event normalizer for wire-format lifecycle records.
"""

from typing import Any, Dict, Mapping, Optional

from ..core.types import EventKind, SuspensionPoint, VizEvent


# Every legacy `type` name the runtime has used, mapped to its canonical kind
LEGACY_TYPE_TO_KIND: Dict[str, str] = {
    'CoroutineCreated': EventKind.CREATED,
    'CoroutineStarted': EventKind.STARTED,
    'CoroutineSuspended': EventKind.SUSPENDED,
    'CoroutineResumed': EventKind.RESUMED,
    'CoroutineBodyCompleted': EventKind.BODY_COMPLETED,
    'CoroutineCompleted': EventKind.COMPLETED,
    'CoroutineCancelled': EventKind.CANCELLED,
    'CoroutineFailed': EventKind.FAILED,
    'ThreadAssigned': EventKind.THREAD_ASSIGNED,
    'DispatcherSelected': EventKind.DISPATCHER_SELECTED,
    'JobStateChanged': EventKind.JOB_STATE_CHANGED,
    'JobCancellationRequested': EventKind.JOB_CANCELLATION_REQUESTED,
    'JobJoinRequested': EventKind.JOB_JOIN_REQUESTED,
    'JobJoinCompleted': EventKind.JOB_JOIN_COMPLETED,
    'WaitingForChildren': EventKind.WAITING_FOR_CHILDREN,
    'DeferredValueAvailable': EventKind.DEFERRED_VALUE_AVAILABLE,
    'DeferredAwaitStarted': EventKind.DEFERRED_AWAIT_STARTED,
    'DeferredAwaitCompleted': EventKind.DEFERRED_AWAIT_COMPLETED,
    'coroutine_created': EventKind.CREATED,
    'coroutine_started': EventKind.STARTED,
    'coroutine_suspended': EventKind.SUSPENDED,
    'coroutine_resumed': EventKind.RESUMED,
    'coroutine_body_completed': EventKind.BODY_COMPLETED,
    'coroutine_completed': EventKind.COMPLETED,
    'coroutine_cancelled': EventKind.CANCELLED,
    'coroutine_failed': EventKind.FAILED,
    'thread_assigned': EventKind.THREAD_ASSIGNED,
    'dispatcher_selected': EventKind.DISPATCHER_SELECTED,
    'job_state_changed': EventKind.JOB_STATE_CHANGED,
    'job_cancellation_requested': EventKind.JOB_CANCELLATION_REQUESTED,
    'job_join_requested': EventKind.JOB_JOIN_REQUESTED,
    'job_join_completed': EventKind.JOB_JOIN_COMPLETED,
    'waiting_for_children': EventKind.WAITING_FOR_CHILDREN,
    'deferred_value_available': EventKind.DEFERRED_VALUE_AVAILABLE,
    'deferred_await_started': EventKind.DEFERRED_AWAIT_STARTED,
    'deferred_await_completed': EventKind.DEFERRED_AWAIT_COMPLETED,
}

# Canonical field name -> wire aliases, first match wins
FIELD_ALIASES: Dict[str, tuple] = {
    'session_id': ('sessionId', 'session_id'),
    'seq': ('seq', 'sequence', 'step'),
    'ts_nanos': ('tsNanos', 'ts_nanos', 'timestamp', 'ts'),
    'coroutine_id': ('coroutineId', 'coroutine_id'),
    'job_id': ('jobId', 'job_id'),
    'parent_id': ('parentCoroutineId', 'parent_coroutine_id', 'parentId', 'parent_id'),
    'scope_id': ('scopeId', 'scope_id'),
    'label': ('label', 'name'),
}

PAYLOAD_ALIASES: Dict[str, tuple] = {
    'thread_id': ('threadId', 'thread_id'),
    'thread_name': ('threadName', 'thread_name'),
    'dispatcher_id': ('dispatcherId', 'dispatcher_id'),
    'dispatcher_name': ('dispatcherName', 'dispatcher_name'),
    'queue_depth': ('queueDepth', 'queue_depth'),
    'is_active': ('isActive', 'is_active'),
    'is_completed': ('isCompleted', 'is_completed'),
    'is_cancelled': ('isCancelled', 'is_cancelled'),
    'children_count': ('childrenCount', 'children_count'),
    'active_children_ids': ('activeChildrenIds', 'active_children_ids'),
    'active_children_count': ('activeChildrenCount', 'active_children_count'),
    'requested_by': ('requestedBy', 'requested_by'),
    'cause': ('cause',),
    'exception_type': ('exceptionType', 'exception_type'),
    'message': ('message', 'errorMessage'),
    'waiting_coroutine_id': ('waitingCoroutineId', 'waiting_coroutine_id'),
    'deferred_id': ('deferredId', 'deferred_id'),
    'awaiting_coroutine_id': ('awaitingCoroutineId', 'awaiting_coroutine_id'),
}

# Kinds that do not name a coroutine and are still admitted
SESSION_SCOPED_KINDS = frozenset({EventKind.UNKNOWN})


class EventNormalizer:
    """Maps raw wire records onto canonical, discriminated events."""

    def __init__(self, legacy_types: Optional[Mapping[str, str]] = None):
        """
        Initialize with the legacy lookup table.

        Args:
            legacy_types: Legacy `type` name -> canonical kind. Defaults to
                          LEGACY_TYPE_TO_KIND.
        """
        self.legacy_types = dict(legacy_types if legacy_types is not None else LEGACY_TYPE_TO_KIND)

    def normalize_record(self, raw: Any) -> Dict[str, Any]:
        """
        Return a copy of the record carrying a non-null `kind`.

        A record with `kind` passes through; a legacy `type` is translated
        through the lookup table and removed. Unrecognized type names are
        kept verbatim so later stages can ignore them explicitly.

        Args:
            raw: Raw record as delivered by the event source

        Returns:
            Record dictionary with a `kind` key
        """
        if not isinstance(raw, Mapping):
            return {'kind': EventKind.UNKNOWN}

        record = dict(raw)
        legacy_type = record.pop('type', None)
        kind = record.get('kind')

        if not kind:
            if isinstance(legacy_type, str) and legacy_type:
                kind = self.legacy_types.get(legacy_type, legacy_type)
            else:
                kind = EventKind.UNKNOWN

        record['kind'] = kind if isinstance(kind, str) else str(kind)
        return record

    def to_event(self, raw: Any) -> Optional[VizEvent]:
        """
        Normalize a raw record into a VizEvent.

        Args:
            raw: Raw record as delivered by the event source

        Returns:
            VizEvent, or None if the record is malformed (no usable seq, or a
            coroutine-scoped kind without a coroutine id)
        """
        record = self.normalize_record(raw)
        fields = {name: _first_present(record, aliases) for name, aliases in FIELD_ALIASES.items()}

        seq = _as_int(fields['seq'])
        if seq is None:
            return None

        kind = record['kind']
        coroutine_id = _as_id(fields['coroutine_id'])
        if coroutine_id is None and kind not in SESSION_SCOPED_KINDS:
            # Join/await events name the waiting side separately; fall back to it
            coroutine_id = _as_id(_first_present(record, ('awaitingCoroutineId',)))
            if coroutine_id is None:
                return None

        consumed = {alias for aliases in FIELD_ALIASES.values() for alias in aliases}
        consumed.update({'kind', 'suspensionPoint'})
        payload = {}
        for name, aliases in PAYLOAD_ALIASES.items():
            value = _first_present(record, aliases)
            if value is not None:
                payload[name] = value
            consumed.update(aliases)
        for key, value in record.items():
            if not isinstance(key, str):
                continue
            if key not in consumed and not key.startswith('suspension'):
                payload.setdefault(key, value)

        return VizEvent(
            seq=seq,
            kind=kind,
            session_id=_as_id(fields['session_id']),
            ts_nanos=_as_int(fields['ts_nanos']) or 0,
            coroutine_id=coroutine_id,
            job_id=_as_id(fields['job_id']),
            parent_id=_as_id(fields['parent_id']),
            scope_id=_as_id(fields['scope_id']),
            label=fields['label'] if isinstance(fields['label'], str) else None,
            suspension_point=self.extract_suspension_point(record),
            payload=payload,
        )

    @staticmethod
    def extract_suspension_point(record: Mapping[str, Any]) -> Optional[SuspensionPoint]:
        """
        Extract a suspension point from a nested or flat payload.

        Priority:
        1. nested `suspensionPoint` object
        2. flat `suspensionFunction` / `suspensionReason` fields

        Args:
            record: Normalized record

        Returns:
            SuspensionPoint or None when the record carries neither shape
        """
        nested = record.get('suspensionPoint')
        if isinstance(nested, Mapping):
            function = nested.get('function')
            reason = nested.get('reason')
            file_name = nested.get('fileName', nested.get('file_name'))
            line_number = nested.get('lineNumber', nested.get('line_number'))
            timestamp = nested.get('timestamp')
        else:
            function = record.get('suspensionFunction')
            reason = record.get('suspensionReason')
            file_name = record.get('suspensionFileName')
            line_number = record.get('suspensionLineNumber')
            timestamp = None

        if function is None and reason is None:
            return None

        if timestamp is None:
            timestamp = _first_present(record, FIELD_ALIASES['ts_nanos'])

        return SuspensionPoint(
            function=str(function) if function is not None else 'unknown',
            reason=str(reason) if reason is not None else 'unknown',
            timestamp=_as_int(timestamp) or 0,
            file_name=str(file_name) if file_name is not None else None,
            line_number=_as_int(line_number),
        )


def _first_present(record: Mapping[str, Any], aliases) -> Any:
    for alias in aliases:
        value = record.get(alias)
        if value is not None:
            return value
    return None


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        try:
            return int(value)
        except (ValueError, OverflowError):
            return None
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            return None
    return None


def _as_id(value: Any) -> Optional[str]:
    if value is None or value == '':
        return None
    return str(value)
