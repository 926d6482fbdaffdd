"""
Mail-Provider Interface
=======================

Provider-unabhängige Operationen, die die Regel-Ausführung braucht.
Die konkrete Implementierung (Gmail, Outlook, IMAP, ...) wird über
MAIL_PROVIDER_FACTORY geladen:

    MAIL_PROVIDER_FACTORY=myproject.mail:build_provider

build_provider(user_id) muss eine MailProvider-Instanz zurückgeben.
"""

import importlib
import logging
import os
from abc import ABC, abstractmethod
from typing import Callable, List, Optional

from automail.mail_types import ParsedEmail

logger = logging.getLogger(__name__)


class MessageNotFoundError(Exception):
    """Nachricht existiert beim Provider nicht mehr (gelöscht/verschoben)"""


class MailProvider(ABC):
    """Abstraktes Interface für Mail-Provider"""

    @abstractmethod
    def send_message(
        self,
        to: str,
        subject: str,
        content: str,
        cc: Optional[str] = None,
        bcc: Optional[str] = None,
        reply_to_message: Optional[ParsedEmail] = None,
    ) -> str:
        """Sendet eine Nachricht. reply_to_message setzt In-Reply-To/References.

        Returns:
            Message-ID der gesendeten Nachricht
        """
        raise NotImplementedError

    @abstractmethod
    def create_draft(
        self,
        to: str,
        subject: str,
        content: str,
        reply_to_message: Optional[ParsedEmail] = None,
    ) -> str:
        """Returns: Draft-ID"""
        raise NotImplementedError

    @abstractmethod
    def archive_thread(self, thread_id: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def trash_thread(self, thread_id: str) -> None:
        """In den Papierkorb (lokale Queue: Operation 'delete')"""
        raise NotImplementedError

    @abstractmethod
    def label_thread(self, thread_id: str, label: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def mark_thread_read(self, thread_id: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def get_message(self, message_id: str) -> ParsedEmail:
        """
        Raises:
            MessageNotFoundError: Nachricht existiert nicht mehr
        """
        raise NotImplementedError

    @abstractmethod
    def get_thread(self, thread_id: str) -> List[ParsedEmail]:
        raise NotImplementedError


ProviderFactory = Callable[[int], MailProvider]

_factory: Optional[ProviderFactory] = None


def load_factory(spec: str) -> ProviderFactory:
    """'paket.modul:funktion' → Callable"""
    module_name, _, attr = spec.partition(":")
    if not module_name or not attr:
        raise ValueError(f"MAIL_PROVIDER_FACTORY ungültig: {spec!r} (erwartet 'modul:funktion')")
    module = importlib.import_module(module_name)
    return getattr(module, attr)


def set_provider_factory(factory: Optional[ProviderFactory]) -> None:
    """Factory direkt setzen (Tests, eingebettete Nutzung)"""
    global _factory
    _factory = factory


def get_mail_provider(user_id: int) -> MailProvider:
    """Provider für einen User (Factory wird beim ersten Aufruf geladen)"""
    global _factory
    if _factory is None:
        spec = os.getenv("MAIL_PROVIDER_FACTORY", "")
        if not spec:
            raise RuntimeError("MAIL_PROVIDER_FACTORY ist nicht gesetzt")
        _factory = load_factory(spec)
        logger.info(f"Mail-Provider-Factory geladen: {spec}")
    return _factory(user_id)
