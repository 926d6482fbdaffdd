"""
Automail - KI-gestützte Regeln für eingehende E-Mails

Pipeline: Regel-Auswahl (KI) → Argument-Generierung (KI) → Ausführung
oder Plan zur Bestätigung. Verzögerte Aktionen laufen über den
periodischen Sweep in automail.services.delayed_actions.
"""

__version__ = "1.0.0"
