"""
Action Executor
===============

Führt die Aktionen einer gewählten Regel gegen den Mail-Provider aus und
schreibt den Audit-Trail (ExecutedRule + ExecutedAction).

Ablauf execute():
    1. ExecutedRule anlegen (flush, damit Webhooks die ID kennen)
    2. Sofort-Aktionen ausführen → ExecutedAction EXECUTED
    3. Frühere, noch geplante Aktionen desselben Threads abbrechen
       (nur wenn neue verzögerte Aktionen dazukommen)
    4. Verzögerte Aktionen → ExecutedAction SCHEDULED (scheduled_for)
    5. Commit, offenen Plan des Threads löschen

Schlägt ein Provider-Aufruf fehl, wird der Lauf abgebrochen: ExecutedRule
ERROR, die fehlerhafte Aktion FAILED, alle folgenden SKIPPED. Das wird
committet, der Plan gelöscht und ActionExecutionError geworfen.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, UTC
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from automail.argument_generator import GeneratedArgs, generated_vars_for
from automail.mail_types import ActionItem, ParsedEmail
from automail.models import (
    ActionType,
    ExecutedAction,
    ExecutedActionStatus,
    ExecutedRule,
    ExecutedRuleStatus,
    Rule,
    TEMPLATE_FIELDS,
    ThreadTracker,
    User,
)
from automail.services.mail_provider import MailProvider
from automail.services.webhook import build_payload, call_webhook
from automail.template_parser import merge_template_with_vars

logger = logging.getLogger(__name__)


class ActionExecutionError(Exception):
    """Provider-Aufruf einer Aktion fehlgeschlagen"""

    def __init__(self, action_type: ActionType, original: Exception):
        super().__init__(f"{action_type.value} fehlgeschlagen: {original}")
        self.action_type = action_type
        self.original = original


@dataclass
class Gating:
    """
    auto_execute_permitted: globale Erlaubnis des Users (User.ai_auto_execute)
    force_execute: explizite Übersteuerung (z.B. "Jetzt ausführen" im UI)
    """

    auto_execute_permitted: bool
    force_execute: bool = False

    @classmethod
    def for_user(cls, user: User, force_execute: bool = False) -> "Gating":
        return cls(auto_execute_permitted=bool(user.ai_auto_execute), force_execute=force_execute)


def should_execute(gating: Gating, rule: Rule) -> bool:
    """Sofort ausführen nur mit globaler Erlaubnis UND (automate ODER force)"""
    return gating.auto_execute_permitted and (bool(rule.automate) or gating.force_execute)


def build_action_items(
    rule: Rule,
    generated: GeneratedArgs,
    matcher_action_type: Optional[ActionType] = None,
    matcher_args: Optional[Dict[str, Any]] = None,
) -> List[ActionItem]:
    """
    Setzt die finalen Feldwerte aus Template + generierten Variablen zusammen.

    Felder ohne Template übernehmen die Argumente aus der Regel-Auswahl,
    aber nur für den Aktions-Typ, den das Modell dort aufgerufen hat.
    """
    items = []
    for action in rule.actions:
        action_type = ActionType(action.type)
        variables = generated_vars_for(generated, action)
        values: Dict[str, Optional[str]] = {}

        for field_name in TEMPLATE_FIELDS:
            template = getattr(action, field_name)
            if template is not None:
                values[field_name] = merge_template_with_vars(template, variables.get(field_name) or {})
            elif matcher_args and action_type == matcher_action_type:
                values[field_name] = matcher_args.get(field_name)
            else:
                values[field_name] = None

        items.append(
            ActionItem(
                type=action_type,
                delay_minutes=action.delay_minutes,
                action_id=action.id,
                **values,
            )
        )
    return items


def _reply_subject(subject: str) -> str:
    return subject if subject.lower().startswith("re:") else f"Re: {subject}"


def _forward_content(item: ActionItem, email: ParsedEmail) -> str:
    header = (
        "---------- Forwarded message ----------\n"
        f"From: {email.sender}\n"
        f"Subject: {email.subject}\n"
    )
    prefix = f"{item.content}\n\n" if item.content else ""
    return f"{prefix}{header}\n{email.body}"


class ActionExecutor:
    """Führt Aktionen aus und schreibt den Audit-Trail (eine DB-Session pro Instanz)."""

    def __init__(self, session: Session, provider: MailProvider, plan_store=None):
        self.session = session
        self.provider = provider
        self.plan_store = plan_store

    def run_action(
        self,
        item: ActionItem,
        email: ParsedEmail,
        executed_rule: ExecutedRule,
        user: User,
    ) -> None:
        """
        Ein Provider-Aufruf pro Aktion. Fehlende Pflichtfelder → Aktion
        wird übersprungen (kein Fehler).

        Raises:
            ActionExecutionError
        """
        try:
            self._dispatch(item, email, executed_rule, user)
        except ActionExecutionError:
            raise
        except Exception as e:
            logger.error(f"❌ {item.type.value} für Thread {email.thread_id} fehlgeschlagen: {e}")
            raise ActionExecutionError(item.type, e) from e

    def _dispatch(self, item: ActionItem, email: ParsedEmail, executed_rule: ExecutedRule, user: User) -> None:
        action_type = item.type

        if action_type == ActionType.ARCHIVE:
            self.provider.archive_thread(email.thread_id)

        elif action_type == ActionType.LABEL:
            if not item.label:
                logger.debug("LABEL ohne Label - übersprungen")
                return
            self.provider.label_thread(email.thread_id, item.label)

        elif action_type == ActionType.DRAFT_EMAIL:
            self.provider.create_draft(
                to=item.to or email.reply_to or email.sender,
                subject=item.subject or _reply_subject(email.subject),
                content=item.content or "",
                reply_to_message=email,
            )

        elif action_type == ActionType.REPLY:
            if not item.content:
                logger.debug("REPLY ohne Inhalt - übersprungen")
                return
            self.provider.send_message(
                to=email.reply_to or email.sender,
                subject=_reply_subject(email.subject),
                content=item.content,
                cc=item.cc,
                bcc=item.bcc,
                reply_to_message=email,
            )

        elif action_type == ActionType.SEND_EMAIL:
            if not (item.to and item.subject and item.content):
                logger.debug("SEND_EMAIL ohne to/subject/content - übersprungen")
                return
            self.provider.send_message(
                to=item.to,
                subject=item.subject,
                content=item.content,
                cc=item.cc,
                bcc=item.bcc,
            )

        elif action_type == ActionType.FORWARD:
            if not item.to:
                logger.debug("FORWARD ohne Empfänger - übersprungen")
                return
            self.provider.send_message(
                to=item.to,
                subject=f"Fwd: {email.subject}",
                content=_forward_content(item, email),
                cc=item.cc,
                bcc=item.bcc,
            )

        elif action_type == ActionType.MARK_READ:
            self.provider.mark_thread_read(email.thread_id)

        elif action_type == ActionType.CALL_WEBHOOK:
            if not item.url:
                logger.debug("CALL_WEBHOOK ohne URL - übersprungen")
                return
            call_webhook(item.url, build_payload(email, executed_rule), user.webhook_secret)

        elif action_type == ActionType.TRACK_THREAD:
            self._track_thread(user, email)

        else:
            raise ValueError(f"Unbekannte Aktion: {action_type}")

    def _track_thread(self, user: User, email: ParsedEmail) -> None:
        exists = (
            self.session.query(ThreadTracker)
            .filter_by(user_id=user.id, thread_id=email.thread_id, message_id=email.message_id)
            .first()
        )
        if exists:
            return
        self.session.add(
            ThreadTracker(
                user_id=user.id,
                thread_id=email.thread_id,
                message_id=email.message_id,
                sent_at=email.internal_date,
            )
        )
        self.session.flush()

    def execute(
        self,
        user: User,
        rule: Rule,
        email: ParsedEmail,
        actions: List[ActionItem],
        automated: bool,
        reason: Optional[str] = None,
        function_args: Optional[Dict[str, Any]] = None,
    ) -> ExecutedRule:
        """
        Returns:
            ExecutedRule (status APPLIED oder SCHEDULED wenn verzögerte Aktionen dabei sind)

        Raises:
            ActionExecutionError: Regel steht auf ERROR, bereits ausgeführte
                Aktionen bleiben EXECUTED, die fehlerhafte ist FAILED
        """
        now = datetime.now(UTC)
        immediate = [item for item in actions if not item.is_delayed]
        delayed = [item for item in actions if item.is_delayed]

        executed_rule = ExecutedRule(
            user_id=user.id,
            rule_id=rule.id,
            thread_id=email.thread_id,
            message_id=email.message_id,
            status=(ExecutedRuleStatus.SCHEDULED if delayed else ExecutedRuleStatus.APPLIED).value,
            automated=automated,
            reason=reason,
            created_at=now,
        )
        self.session.add(executed_rule)
        self.session.flush()

        for index, item in enumerate(immediate):
            try:
                self.run_action(item, email, executed_rule, user)
            except ActionExecutionError as e:
                self._record_failure(executed_rule, user, email, item, immediate[index + 1:] + delayed,
                                     function_args, e)
                raise
            self._add_audit(executed_rule, user, email, item, function_args,
                            status=ExecutedActionStatus.EXECUTED, executed_at=datetime.now(UTC))

        if delayed:
            from automail.services.delayed_actions import cancel_scheduled_actions_for_thread

            cancel_scheduled_actions_for_thread(
                self.session, user.id, email.thread_id, commit=False
            )

        for item in delayed:
            self._add_audit(executed_rule, user, email, item, function_args,
                            status=ExecutedActionStatus.SCHEDULED,
                            scheduled_for=now + timedelta(minutes=item.delay_minutes))

        self.session.commit()
        self._delete_plan(user, email)

        logger.info(
            f"✅ Regel '{rule.name}' auf Thread {email.thread_id}: "
            f"{len(immediate)} ausgeführt, {len(delayed)} geplant (automated={automated})"
        )
        return executed_rule

    def _record_failure(
        self,
        executed_rule: ExecutedRule,
        user: User,
        email: ParsedEmail,
        failed: ActionItem,
        remaining: List[ActionItem],
        function_args: Optional[Dict[str, Any]],
        error: ActionExecutionError,
    ) -> None:
        """
        Audit für einen abgebrochenen Lauf: die Provider-Aufrufe davor sind
        passiert und bleiben EXECUTED. Der Plan wird gelöscht, damit ein
        erneutes Bestätigen sie nicht wiederholt.
        """
        executed_rule.status = ExecutedRuleStatus.ERROR.value
        failed_action = self._add_audit(executed_rule, user, email, failed, function_args,
                                        status=ExecutedActionStatus.FAILED)
        failed_action.error_message = str(error.original)[:500]
        for item in remaining:
            skipped = self._add_audit(executed_rule, user, email, item, function_args,
                                      status=ExecutedActionStatus.SKIPPED)
            skipped.error_message = f"Nicht ausgeführt: {failed.type.value} fehlgeschlagen"
        self.session.commit()
        self._delete_plan(user, email)

        logger.warning(
            f"⚠️ Regel {executed_rule.rule_id} auf Thread {email.thread_id} abgebrochen: "
            f"{failed.type.value} FAILED, {len(remaining)} übersprungen"
        )

    def _delete_plan(self, user: User, email: ParsedEmail) -> None:
        if self.plan_store is not None:
            self.plan_store.delete(user.id, email.thread_id)

    def _add_audit(
        self,
        executed_rule: ExecutedRule,
        user: User,
        email: ParsedEmail,
        item: ActionItem,
        function_args: Optional[Dict[str, Any]],
        status: ExecutedActionStatus,
        executed_at: Optional[datetime] = None,
        scheduled_for: Optional[datetime] = None,
    ) -> ExecutedAction:
        executed_action = ExecutedAction(
            executed_rule_id=executed_rule.id,
            user_id=user.id,
            type=item.type.value,
            message_id=email.message_id,
            thread_id=email.thread_id,
            status=status.value,
            executed_at=executed_at,
            scheduled_for=scheduled_for,
            **item.field_values(),
        )
        executed_action.arguments = function_args or {}
        self.session.add(executed_action)
        return executed_action
