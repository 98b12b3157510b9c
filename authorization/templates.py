"""HTML pages for the consent prompt and the consent-denied outcome."""

from html import escape

from starlette.requests import Request
from starlette.responses import HTMLResponse, Response

from .oauth2_models import AUTH_STATE, GRANTED_SCOPES, USER_OAUTH_APPROVAL, AuthorizationContext

PAGE_STYLE = """
        body { font-family: -apple-system, sans-serif; max-width: 600px; margin: 50px auto; padding: 20px; }
        .card { background: #f8f9fa; border-radius: 12px; padding: 30px; border: 1px solid #e9ecef; }
        .client-info { background: #007AFF; color: white; border-radius: 8px; padding: 15px; margin-bottom: 20px; }
        .scopes { background: white; border-radius: 8px; padding: 15px; margin: 15px 0; border: 1px solid #e9ecef; }
        .buttons { text-align: center; margin-top: 25px; }
        button { background: #007AFF; color: white; border: none; padding: 12px 24px; border-radius: 8px; font-size: 16px; cursor: pointer; margin: 0 10px; }
        button.deny { background: #FF3B30; }
"""


class HTMLConsentRenderer:
    """Default ConsentRenderer producing self-contained HTML pages."""

    def render_consent(self, request: Request, context: AuthorizationContext) -> Response:
        client = context.client
        client_name = escape(client.name or client.client_id) if client else "Unknown Client"

        scopes_html = ""
        for scope in context.requested_scopes:
            scopes_html += (
                f'<li><label><input type="checkbox" name="{GRANTED_SCOPES}" '
                f'value="{escape(scope)}" checked /> {escape(scope)}</label></li>'
            )

        html_content = f"""
<!DOCTYPE html>
<html>
<head>
    <title>Authorize {client_name}</title>
    <meta charset="utf-8">
    <meta name="viewport" content="width=device-width, initial-scale=1">
    <style>{PAGE_STYLE}</style>
</head>
<body>
    <div class="card">
        <div class="client-info">
            <h2>Authorization Request</h2>
            <p><strong>{client_name}</strong> is requesting access to your account.</p>
        </div>

        <form action="{escape(context.action_uri or '')}" method="post">
            <input type="hidden" name="{AUTH_STATE}" value="{escape(context.auth_state or '')}" />
            <div class="scopes">
                <h3>Requested Permissions:</h3>
                <ul>
                    {scopes_html}
                </ul>
            </div>
            <div class="buttons">
                <button type="submit" name="{USER_OAUTH_APPROVAL}" value="true">Allow</button>
                <button type="submit" name="{USER_OAUTH_APPROVAL}" value="false" class="deny">Deny</button>
            </div>
        </form>
    </div>
</body>
</html>
        """

        return HTMLResponse(content=html_content)

    def render_denied(self, request: Request, context: AuthorizationContext) -> Response:
        html_content = f"""
<!DOCTYPE html>
<html>
<head>
    <title>Access Denied</title>
    <meta charset="utf-8">
    <style>{PAGE_STYLE}</style>
</head>
<body>
    <div class="card">
        <h2>Access Denied</h2>
        <p>You did not grant access. You can close this window.</p>
    </div>
</body>
</html>
        """

        return HTMLResponse(content=html_content)
