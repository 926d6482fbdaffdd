"""
Auto-Rules Engine
=================

Einstiegspunkt für eingehende Nachrichten: Regel wählen (KI), Argumente
generieren (KI), dann sofort ausführen oder einen Plan zur Bestätigung
ablegen.

Usage:
    from automail.auto_rules_engine import AutoRulesEngine

    engine = AutoRulesEngine(
        db_session=session,
        ai_client=get_ai_client(),
        provider=get_mail_provider(user.id),
        plan_store=PlanStore(),
    )

    # Einzelne Nachricht
    decision = engine.plan_or_execute(user, email)

    # Offenen Plan bestätigen / ablehnen
    engine.confirm_plan(user, thread_id)
    engine.reject_plan(user, thread_id)

    # Mehrere Nachrichten (Queue-Handler "run_rules")
    stats = engine.process_messages(user, message_ids)
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy.orm import Session

from automail.ai_client import AIClient, AIClientError
from automail.argument_generator import ArgumentGenerator
from automail.function_calls import ParsedFunctionCall
from automail.helpers.database import get_enabled_rules
from automail.mail_types import ActionItem, ParsedEmail
from automail.models import ExecutedRule, ExecutedRuleStatus, Rule, User
from automail.rule_matcher import RuleMatcher
from automail.services.action_executor import (
    ActionExecutor,
    Gating,
    build_action_items,
    should_execute,
)
from automail.services.mail_provider import MailProvider, MessageNotFoundError
from automail.services.plan_store import Plan, PlanStore

logger = logging.getLogger(__name__)


@dataclass
class RuleDecision:
    """Ergebnis von plan_or_execute(): entweder ausgeführt oder als Plan abgelegt"""

    rule: Rule
    function_call: ParsedFunctionCall
    actions: List[ActionItem]
    executed_rule: Optional[ExecutedRule] = None
    plan: Optional[Plan] = None

    @property
    def executed(self) -> bool:
        return self.executed_rule is not None


class AutoRulesEngine:
    """
    Engine für KI-gestützte Regeln.

    Wird aufgerufen:
    1. Pro eingehender Nachricht (Celery-Task apply_rules_to_message)
    2. Für mehrere Nachrichten über die Queues (Handler "run_rules")
    3. Vom User beim Bestätigen/Ablehnen eines Plans
    """

    def __init__(
        self,
        db_session: Session,
        ai_client: AIClient,
        provider: MailProvider,
        plan_store: Optional[PlanStore] = None,
        matcher: Optional[RuleMatcher] = None,
        generator: Optional[ArgumentGenerator] = None,
    ):
        self._db_session = db_session
        self.provider = provider
        self.plan_store = plan_store if plan_store is not None else PlanStore()
        self.matcher = matcher or RuleMatcher(ai_client)
        self.generator = generator or ArgumentGenerator(ai_client)
        self.executor = ActionExecutor(db_session, provider, plan_store=self.plan_store)

    @property
    def db(self) -> Session:
        """DB-Session Accessor"""
        return self._db_session

    def _already_processed(self, user: User, email: ParsedEmail) -> bool:
        return (
            self.db.query(ExecutedRule)
            .filter(
                ExecutedRule.user_id == user.id,
                ExecutedRule.message_id == email.message_id,
                ExecutedRule.status.in_(
                    [
                        ExecutedRuleStatus.APPLIED.value,
                        ExecutedRuleStatus.SCHEDULED.value,
                        ExecutedRuleStatus.ERROR.value,
                    ]
                ),
            )
            .first()
            is not None
        )

    def plan_or_execute(
        self,
        user: User,
        email: ParsedEmail,
        rules: Optional[Sequence[Rule]] = None,
        gating: Optional[Gating] = None,
        skip_processed: bool = True,
    ) -> Optional[RuleDecision]:
        """
        Wendet die Regeln des Users auf eine Nachricht an.

        Args:
            user: Besitzer der Regeln
            email: Geparste Nachricht
            rules: Optional - sonst alle aktiven Regeln des Users
            gating: Optional - sonst aus User.ai_auto_execute
            skip_processed: Nachrichten mit bereits angewendeter Regel überspringen

        Returns:
            RuleDecision oder None (kein Match, ungültige Entscheidung,
            Argument-Generierung fehlgeschlagen, bereits verarbeitet)

        Raises:
            AIClientError: Regel-Auswahl fehlgeschlagen
            ActionExecutionError: Sofort-Ausführung fehlgeschlagen
        """
        if skip_processed and self._already_processed(user, email):
            logger.info(f"Nachricht {email.message_id} wurde bereits verarbeitet - übersprungen")
            return None

        if rules is None:
            rules = get_enabled_rules(self.db, user.id)
        else:
            rules = [rule for rule in rules if rule.user_id == user.id]

        function_call = self.matcher.choose_rule(email, rules)
        if function_call is None:
            return None
        rule = function_call.rule

        try:
            generated = self.generator.generate(email, rule)
        except AIClientError as e:
            logger.warning(
                f"⚠️ Argument-Generierung für Regel '{rule.name}' fehlgeschlagen ({e.kind.value}) "
                f"- keine Aktion für Nachricht {email.message_id}"
            )
            return None

        actions = build_action_items(
            rule,
            generated,
            matcher_action_type=function_call.action_type,
            matcher_args=function_call.field_values(),
        )
        function_args = function_call.args.model_dump(exclude_none=True)
        decision = RuleDecision(rule=rule, function_call=function_call, actions=actions)

        gating = gating or Gating.for_user(user)
        if should_execute(gating, rule):
            decision.executed_rule = self.executor.execute(
                user,
                rule,
                email,
                actions,
                automated=bool(rule.automate),
                reason=function_call.args.reason,
                function_args=function_args,
            )
            return decision

        plan = Plan(
            function_name=function_call.name,
            function_args=function_args,
            message_id=email.message_id,
            thread_id=email.thread_id,
            rule_id=rule.id,
            actions=actions,
            reason=function_call.args.reason,
        )
        self.plan_store.save(user.id, email.thread_id, plan)
        decision.plan = plan
        return decision

    def confirm_plan(
        self, user: User, thread_id: str, email: Optional[ParsedEmail] = None
    ) -> Optional[ExecutedRule]:
        """
        Führt einen offenen Plan aus (automated=False) und löscht ihn.

        Returns:
            ExecutedRule oder None wenn kein (gültiger) Plan existiert
        """
        plan = self.plan_store.get(user.id, thread_id)
        if plan is None:
            logger.info(f"Kein offener Plan für Thread {thread_id}")
            return None

        rule = self.db.get(Rule, plan.rule_id) if plan.rule_id else None
        if rule is None or rule.user_id != user.id:
            logger.warning(f"⚠️ Regel {plan.rule_id} des Plans existiert nicht mehr - Plan verworfen")
            self.plan_store.delete(user.id, thread_id)
            return None

        if email is None:
            try:
                email = self.provider.get_message(plan.message_id)
            except MessageNotFoundError:
                logger.warning(f"⚠️ Nachricht {plan.message_id} existiert nicht mehr - Plan verworfen")
                self.plan_store.delete(user.id, thread_id)
                return None

        return self.executor.execute(
            user,
            rule,
            email,
            plan.actions,
            automated=False,
            reason=plan.reason,
            function_args=plan.function_args,
        )

    def reject_plan(self, user: User, thread_id: str) -> bool:
        """
        Löscht einen offenen Plan und vermerkt die Ablehnung im Audit-Trail.

        Returns:
            True wenn ein Plan abgelehnt wurde
        """
        plan = self.plan_store.get(user.id, thread_id)
        if plan is None:
            return False

        self.db.add(
            ExecutedRule(
                user_id=user.id,
                rule_id=plan.rule_id,
                thread_id=plan.thread_id,
                message_id=plan.message_id,
                status=ExecutedRuleStatus.REJECTED.value,
                automated=False,
                reason=plan.reason,
            )
        )
        self.db.commit()
        self.plan_store.delete(user.id, thread_id)
        logger.info(f"❎ Plan für Thread {thread_id} abgelehnt")
        return True

    def process_messages(
        self,
        user: User,
        message_ids: Sequence[str],
        gating: Optional[Gating] = None,
    ) -> Dict[str, Any]:
        """
        Wendet die Regeln auf mehrere Nachrichten an (Fehler pro Nachricht
        werden gezählt, nicht weitergeworfen).

        Returns:
            Dict mit Statistiken
        """
        rules = get_enabled_rules(self.db, user.id)
        stats = {
            "messages_checked": len(message_ids),
            "executed": 0,
            "planned": 0,
            "no_match": 0,
            "errors": 0,
        }

        for message_id in message_ids:
            try:
                email = self.provider.get_message(message_id)
                decision = self.plan_or_execute(user, email, rules=rules, gating=gating)
            except MessageNotFoundError:
                logger.warning(f"Nachricht {message_id} nicht gefunden - übersprungen")
                stats["no_match"] += 1
                continue
            except Exception as e:
                logger.error(f"Auto-Rule Error für Nachricht {message_id}: {e}")
                self.db.rollback()
                stats["errors"] += 1
                continue

            if decision is None:
                stats["no_match"] += 1
            elif decision.executed:
                stats["executed"] += 1
            else:
                stats["planned"] += 1

        return stats


def run_rules_for_messages(user_id: int, message_ids: Sequence[str]) -> Dict[str, Any]:
    """Eigene Session + Engine für Queue-Handler (lokal und verteilt)"""
    from automail.ai_client import get_ai_client
    from automail.helpers.database import get_db_session, get_user
    from automail.services.mail_provider import get_mail_provider

    with get_db_session() as db:
        user = get_user(db, user_id)
        if user is None:
            raise ValueError(f"User {user_id} not found")
        engine = AutoRulesEngine(db, get_ai_client(), get_mail_provider(user_id))
        return engine.process_messages(user, list(message_ids))
