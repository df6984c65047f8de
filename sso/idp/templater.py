"""
HTML templates for the login and error pages.
Uses Jinja2 templates.
"""

from pathlib import Path
from typing import Dict, List, Optional
from urllib.parse import urlencode

from jinja2 import Environment, FileSystemLoader

from sso.idp.schemas import get_scope_descriptions, parse_scope

# Set up Jinja2 environment
_template_dir = Path(__file__).parent / "templates"
_env = Environment(
    loader=FileSystemLoader(_template_dir),
    autoescape=True,
)

ERROR_MESSAGES = {
    "invalid_credentials": "Invalid username or password",
    "federation_failed": "Sign in with the external provider failed. Please try again.",
    "connector_not_found": "Unknown sign-in provider",
    "invalid_state": "Your sign-in attempt expired. Please try again.",
    "invalid_callback_params": "The sign-in provider returned an incomplete response",
}


def describe_error(error: str) -> str:
    return ERROR_MESSAGES.get(error, error)


def login_page(
    params: Dict[str, str],
    connectors: Optional[List] = None,
    client_name: str = "",
    error: str = "",
    username: str = "",
) -> str:
    """Generate the login page HTML."""
    template = _env.get_template("login.jinja2")
    query = urlencode(params)
    return template.render(
        params=params,
        client_name=client_name,
        scopes=get_scope_descriptions(list(parse_scope(params.get("scope")))),
        connectors=[
            {
                "name": connector.display_name,
                "url": f"/auth/federation/{connector.connector_id}" + (f"?{query}" if query else ""),
            }
            for connector in connectors or []
        ],
        error=describe_error(error) if error else "",
        username=username,
        register_url="/register" + (f"?{query}" if query else ""),
    )


def logged_in_page(username: str) -> str:
    """Shown on /login when a session exists and there is no request to resume."""
    template = _env.get_template("logged_in.jinja2")
    return template.render(username=username)


def error_page(error: str, error_description: str = "") -> str:
    """Generate an error page HTML."""
    template = _env.get_template("error.jinja2")
    return template.render(
        error=error,
        error_description=error_description,
    )
