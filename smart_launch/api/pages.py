"""
Minimal HTML pages: launch/callback error page and the post-launch index.

All dynamic values are escaped. Pages never include tokens or secrets.
"""

from datetime import datetime, timezone
from html import escape
from typing import Optional

from smart_launch.core.errors import SMARTLaunchError
from smart_launch.smart.models import SMARTSession

_PAGE = """<!DOCTYPE html>
<html lang="en">
  <head>
    <meta http-equiv="Content-Type" content="text/html; charset=utf-8">
    <title>{title}</title>
    <link rel="stylesheet" href="/resources/styles.css">
  </head>
  <body>
{body}
  </body>
</html>
"""


def render_page(title: str, body: str) -> str:
    return _PAGE.format(title=escape(title), body=body)


def render_error_page(error: SMARTLaunchError, request_id: Optional[str] = None) -> str:
    hint = (
        "<p class='hint'>Return to your EHR and launch the app again.</p>"
        if error.restart_hint
        else "<p class='hint'>If this keeps happening, contact your EHR administrator.</p>"
    )
    reference = f"<p class='reference'>Reference: {escape(request_id)}</p>" if request_id else ""
    body = (
        "    <div id='errors'>\n"
        "      <h1>SMART launch failed</h1>\n"
        f"      <p class='code'>Error code: <strong>{escape(error.code)}</strong></p>\n"
        f"      <p class='message'>{escape(error.user_message)}</p>\n"
        f"      {hint}\n"
        f"      {reference}\n"
        "    </div>"
    )
    return render_page("SMART launch failed", body)


def _format_time(epoch: float) -> str:
    return datetime.fromtimestamp(epoch, tz=timezone.utc).isoformat()


def render_index_page(session: Optional[SMARTSession]) -> str:
    if session is None:
        body = (
            "    <div id='holder'>\n"
            "      <h1>No active SMART session</h1>\n"
            "      <p>Launch this app from your EHR to connect to a FHIR server.</p>\n"
            "    </div>"
        )
        return render_page("SMART on FHIR app", body)

    summary = session.summary()
    scopes = "".join(f"<li>{escape(scope)}</li>" for scope in summary["scopes"])
    rows = [
        ("FHIR server", summary["iss"]),
        ("Patient", summary["patient"] or "(none)"),
        ("Encounter", summary["encounter"] or "(none)"),
        ("User", summary["user"] or "(unknown)"),
        ("Token expires", _format_time(summary["expires_at"])),
    ]
    table = "".join(f"<tr><th>{escape(k)}</th><td>{escape(str(v))}</td></tr>" for k, v in rows)
    body = (
        "    <div id='holder'>\n"
        "      <h1>Connected to FHIR server</h1>\n"
        f"      <table id='context'>{table}</table>\n"
        f"      <h2>Granted scopes</h2>\n      <ul id='scopes'>{scopes}</ul>\n"
        "      <form method='post' action='/logout'><button type='submit'>Log out</button></form>\n"
        "    </div>"
    )
    return render_page("SMART on FHIR app", body)
