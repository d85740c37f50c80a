"""
Plain-text message templates.

Wording is minimal. A richer composer (for example one backed
by a language model) can be injected into SchedulingService instead.
"""
from typing import Protocol


class Composer(Protocol):
    def proposal(self, title: str, slot_labels: list[str], recipient_name: str | None) -> tuple[str, str]:
        ...

    def follow_up(self, title: str, slot_labels: list[str], follow_up_number: int) -> str:
        ...

    def confirmation(self, title: str, slot_label: str | None, recipient_name: str | None) -> tuple[str, str]:
        ...


class TemplateComposer:
    """Default composer: (subject, body) for proposals and confirmations, a body for follow-ups."""

    def proposal(self, title: str, slot_labels: list[str], recipient_name: str | None) -> tuple[str, str]:
        greeting = f"Hi {recipient_name}," if recipient_name else "Hi,"
        if slot_labels:
            options = "\n".join(f"{i}. {label}" for i, label in enumerate(slot_labels, start=1))
            body = (
                f"{greeting}\n\n"
                f"Would any of these times work for {title}?\n\n"
                f"{options}\n\n"
                "Just reply with the option that suits you best."
            )
        else:
            body = (
                f"{greeting}\n\n"
                f"What times work for you for {title}? Let us know a few options."
            )
        return f"Scheduling: {title}", body

    def follow_up(self, title: str, slot_labels: list[str], follow_up_number: int) -> str:
        lines = [f"Following up on {title}."]
        if slot_labels:
            lines.append("These times are still open: " + "; ".join(slot_labels) + ".")
        lines.append("Let us know what works for you.")
        return " ".join(lines)

    def confirmation(self, title: str, slot_label: str | None, recipient_name: str | None) -> tuple[str, str]:
        greeting = f"Hi {recipient_name}," if recipient_name else "Hi,"
        when = f"We're confirmed for {slot_label}." if slot_label else "We're confirmed."
        body = (
            f"{greeting}\n\n"
            f"{when} A calendar invite for {title} will follow.\n\n"
            "Looking forward to speaking with you."
        )
        return f"Confirmed: {title}", body
