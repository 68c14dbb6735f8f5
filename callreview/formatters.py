"""Output formatters for run results and ledger state."""

from typing import List

from .models import CallListing, CallStatus, ProcessedCallRecord, RunSummary

_STATUS_ICONS = {
    CallStatus.COMPLETED: "✅",
    CallStatus.FAILED: "❌",
    CallStatus.SKIPPED: "⏭️ ",
    CallStatus.PROCESSING: "⏳",
}


def format_run_summary(summary: RunSummary) -> str:
    """
    Format a run summary for console output.

    Args:
        summary: Counters from a scheduled or webhook run

    Returns:
        Formatted string for console display
    """
    output = []
    output.append("\n" + "=" * 70)
    output.append("CALL REVIEW RUN RESULTS")
    output.append("=" * 70)

    output.append(f"\n📊 Summary:")
    output.append(f"  • Tenants checked: {summary.tenants_checked}")
    output.append(f"  • Tenants with new calls: {summary.tenants_processed}")
    output.append(f"  • Calls reviewed: {summary.calls_processed}")
    output.append(f"  • Calls failed: {summary.calls_failed}")
    output.append(f"  • Calls skipped: {summary.calls_skipped}")

    if summary.error:
        output.append(f"\n⚠️  Run stopped early: {summary.error}")

    output.append("\n" + "=" * 70)
    return "\n".join(output)


def format_ledger_records(tenant_id: str, records: List[ProcessedCallRecord]) -> str:
    """Format the processed-call ledger of one tenant, grouped by status."""
    if not records:
        return f"No processed calls for tenant {tenant_id}."

    by_status = {}
    for record in records:
        by_status.setdefault(record.status, []).append(record)

    output = []
    output.append("\n" + "=" * 70)
    output.append(f"PROCESSED CALLS - {tenant_id}")
    output.append("=" * 70)

    counts = " | ".join(f"{status.value}: {len(by_status.get(status, []))}" for status in CallStatus)
    output.append(f"\n📊 {len(records)} total | {counts}")

    for status in CallStatus:
        group = by_status.get(status)
        if not group:
            continue
        output.append(f"\n{_STATUS_ICONS[status]} {status.value.upper()}")
        output.append("   " + "-" * 66)
        for record in sorted(group, key=lambda r: r.updated_at, reverse=True):
            updated = record.updated_at.strftime("%Y-%m-%d %H:%M")
            line = f"   {record.call_key}  ({updated})"
            if record.review_id is not None:
                line += f"  review #{record.review_id}"
            output.append(line)
            if record.error_message:
                message = record.error_message
                if len(message) > 100:
                    message = message[:100] + "..."
                output.append(f"     💬 {message}")

    output.append("\n" + "=" * 70)
    return "\n".join(output)


def format_call_listing(tenant_id: str, calls: List[CallListing]) -> str:
    """Format recent platform calls with their processing status."""
    if not calls:
        return f"No recent calls for tenant {tenant_id}."

    output = []
    output.append("\n" + "=" * 70)
    output.append(f"RECENT CALLS - {tenant_id}")
    output.append("=" * 70)

    new_count = sum(1 for c in calls if c.status == "new")
    output.append(f"\n📊 {len(calls)} calls | {new_count} never processed")

    for call in calls:
        icon = "🆕" if call.status == "new" else _STATUS_ICONS[CallStatus(call.status)]
        date = call.occurred_at.strftime("%Y-%m-%d") if call.occurred_at else "unknown date"
        output.append(f"\n{icon} {call.title or 'Untitled'}  ({date})")
        output.append(f"   {call.call_kind} {call.call_id} | status: {call.status}")
        if call.seller_name:
            output.append(f"   Seller: {call.seller_name}")
        if call.customer_name:
            output.append(f"   Customer: {call.customer_name}")
        if not call.transcript_available:
            output.append("   No transcript yet")
        if call.review_id is not None:
            output.append(f"   Review #{call.review_id}")
        if call.error_message:
            output.append(f"   💬 {call.error_message[:100]}")

    output.append("\n" + "=" * 70)
    return "\n".join(output)
