"""
HTML templates for registration and account deletion pages.
Uses Jinja2 templates; the shared layout lives with the login templates.
"""

from pathlib import Path
from typing import Dict, Optional
from urllib.parse import urlencode

from jinja2 import Environment, FileSystemLoader

from sso.constants import MIN_PASSWORD_LENGTH

# Set up Jinja2 environment
_template_dir = Path(__file__).parent / "templates"
_layout_dir = Path(__file__).parent.parent / "idp" / "templates"
_env = Environment(
    loader=FileSystemLoader([_template_dir, _layout_dir]),
    autoescape=True,
)


def register_page(
    params: Optional[Dict[str, str]] = None,
    error: str = "",
    username: str = "",
    email: str = "",
) -> str:
    """Generate the registration form."""
    params = params or {}
    query = urlencode(params)
    template = _env.get_template("register.jinja2")
    return template.render(
        params=params,
        error=error,
        username=username,
        email=email,
        min_password_length=MIN_PASSWORD_LENGTH,
        login_url="/login" + (f"?{query}" if query else ""),
    )


def delete_account_page(username: str, error: str = "") -> str:
    template = _env.get_template("delete_account.jinja2")
    return template.render(username=username, error=error)


def account_deleted_page() -> str:
    template = _env.get_template("account_deleted.jinja2")
    return template.render()
