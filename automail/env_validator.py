"""
Automail - Environment Validator

Läuft beim Start des Celery-Workers (worker_init). Fehlende Pflichtwerte
brechen den Start ab, fehlende Verbindungs-URLs sind nur Warnungen.
"""

import os
import sys
from dataclasses import dataclass
from typing import List, Tuple


@dataclass
class EnvIssue:
    var: str
    message: str

    def __str__(self):
        return f"{self.var}: {self.message}"


class EnvironmentValidator:
    """Validiert Umgebungsvariablen passend zum gewählten KI-Backend"""

    # Pflicht unabhängig vom Backend
    REQUIRED = {
        "MAIL_PROVIDER_FACTORY": "Factory für den Mail-Provider (modul:funktion)",
    }

    BACKEND_REQUIRED = {
        "ollama": {
            "OLLAMA_BASE_URL": "Ollama Server URL (z.B. http://localhost:11434)",
            "OLLAMA_MODEL": "Ollama Modell Name (z.B. llama3.1:8b)",
        },
        "openai": {"OPENAI_API_KEY": "OpenAI API Key (sk-...)"},
        "mistral": {"MISTRAL_API_KEY": "Mistral API Key"},
    }

    POSITIVE_INTS = ("PLAN_TTL_DAYS", "DELAYED_ACTIONS_INTERVAL", "QUEUE_PARALLELISM", "AI_TIMEOUT")

    DEFAULTED = {
        "REDIS_URL": "redis://localhost:6379/0",
        "DATABASE_URL": "SQLite (automail.db)",
    }

    @staticmethod
    def _is_unset(value) -> bool:
        # "your-..." sind Platzhalter aus der Beispiel-.env
        return not value or value.startswith("your-")

    @classmethod
    def collect(cls) -> Tuple[List[EnvIssue], List[EnvIssue]]:
        """Returns: (errors, warnings)"""
        required = dict(cls.REQUIRED)
        errors: List[EnvIssue] = []

        backend = os.getenv("AI_BACKEND", "ollama").lower()
        if backend in cls.BACKEND_REQUIRED:
            required.update(cls.BACKEND_REQUIRED[backend])
        else:
            errors.append(EnvIssue(
                "AI_BACKEND", f"unbekannt ({backend}), erlaubt: {', '.join(cls.BACKEND_REQUIRED)}"
            ))

        errors.extend(
            EnvIssue(var, f"fehlt - {description}")
            for var, description in required.items()
            if cls._is_unset(os.getenv(var))
        )

        for var in cls.POSITIVE_INTS:
            value = os.getenv(var)
            if value is not None and (not value.isdigit() or int(value) <= 0):
                errors.append(EnvIssue(var, f"muss eine positive Ganzzahl sein (ist: {value!r})"))

        warnings = [
            EnvIssue(var, f"nicht gesetzt - verwende {default}")
            for var, default in cls.DEFAULTED.items()
            if not os.getenv(var)
        ]
        return errors, warnings

    @classmethod
    def validate(cls):
        errors, warnings = cls.collect()

        for warning in warnings:
            print(f"⚠️  {warning}")

        if errors:
            print("🚨 Ungültige Umgebung - Worker wird nicht gestartet:")
            for error in errors:
                print(f"   ❌ {error}")
            print("💡 Werte in .env / .env.local setzen und den Worker neu starten")
            sys.exit(1)

        print("✅ Alle erforderlichen Umgebungsvariablen sind gesetzt")
        return True


def validate_environment():
    """Entry-Point für Environment Validation"""
    EnvironmentValidator.validate()
