"""Services: Mail-Provider, Pläne, Ausführung, verzögerte Aktionen, Webhooks"""
