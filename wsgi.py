"""
WSGI entry point for DMARC Analyser.

WSGI hosts import this module and look for the ``app`` variable.  The
development server can also be started by running this file directly.

DEPLOYMENT
==========

1. Install the package and its dependencies:

     pip install .

2. Set the environment (never commit these):

     SECRET_KEY=<a-long-random-string>
     DATABASE_URL=sqlite:////srv/dmarc/instance/dmarc.db
     APP_BASE_URL=https://dmarc.example.com

   Optional: MAIL_API_URL / MAIL_API_KEY for mail, GMAIL_CLIENT_ID /
   GMAIL_CLIENT_SECRET / GMAIL_REDIRECT_URI for Gmail import, STRIPE_* to
   enable SaaS billing.

3. Create the tables and seed the known-sender catalogue:

     python init_db.py

4. Point the WSGI server at ``wsgi:app``, e.g.

     gunicorn wsgi:app

5. Schedule the background jobs (see run_jobs.py).

LOCAL DEVELOPMENT
=================

  export SECRET_KEY=dev-only-not-for-production
  python wsgi.py

For testing:

  pip install -e ".[test]"
  pytest tests/ -v
"""

from __future__ import annotations

from dmarc_analyser import create_app

app = create_app()

if __name__ == "__main__":
    app.run(debug=True)
