"""
Backend applicativo Consultorio.

Struttura:
- config.py       : configurazione da variabili d'ambiente (.env)
- db.py           : engine e sessioni SQLAlchemy
- models.py       : modelli ORM e enum
- store.py        : snapshot e protocolli di persistenza (+ implementazione in memoria)
- sql_store.py    : implementazione SQLAlchemy degli store
- transitions.py  : macchina a stati degli appuntamenti
- dispatcher.py   : istruzioni di side effect e loro esecuzione
- agenda.py       : vista calendario giorno/settimana/mese e slot
- alerts.py       : classificazione di urgenza e ordinamento "prossimi"
- mailer.py       : template email e invio SMTP (modalità demo senza credenziali)
- services.py     : facciata dei casi d'uso
- seed.py         : dati iniziali
- cli.py          : operazioni da riga di comando
- api_main.py     : API FastAPI
"""
