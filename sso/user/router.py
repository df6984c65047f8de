"""
Registration and account deletion pages.
"""

from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Form, Request
from fastapi.responses import HTMLResponse, RedirectResponse
from loguru import logger
from pydantic import ValidationError as PydanticValidationError

from sso.dependencies import clear_session_cookie, get_current_user, get_users
from sso.exceptions import UsernameTakenError, WeakPasswordError
from sso.idp.router import pick_params
from sso.user.schemas import RegisterArgs
from sso.user.service import UserService
from sso.user.templater import account_deleted_page, delete_account_page, register_page

router = APIRouter()


@router.get("/register", response_class=HTMLResponse)
async def register_get(request: Request):
    return HTMLResponse(content=register_page(params=pick_params(request.query_params)))


@router.post("/register", response_class=HTMLResponse)
async def register_post(
    request: Request,
    username: str = Form(""),
    email: str = Form(""),
    password: str = Form(""),
    users: UserService = Depends(get_users),
):
    """Create a local account, then send the user to sign in."""
    params = pick_params(await request.form())

    def form_error(message: str, status_code: int) -> HTMLResponse:
        return HTMLResponse(
            content=register_page(params=params, error=message, username=username, email=email),
            status_code=status_code,
        )

    try:
        args = RegisterArgs(username=username, email=email, password=password)
    except PydanticValidationError as exc:
        return form_error(exc.errors()[0]["msg"].removeprefix("Value error, "), 400)

    try:
        await users.register(args.username, args.email, args.password)
    except UsernameTakenError:
        return form_error("Username already taken", 409)
    except WeakPasswordError as exc:
        return form_error(exc.message, 400)

    target = "/login" + (f"?{urlencode(params)}" if params else "")
    return RedirectResponse(url=target, status_code=302)


@router.get("/account/delete", response_class=HTMLResponse)
async def delete_account_get(request: Request):
    user = await get_current_user(request)
    if not user:
        return RedirectResponse(url="/login", status_code=302)
    return HTMLResponse(content=delete_account_page(user.username))


@router.post("/account/delete", response_class=HTMLResponse)
async def delete_account_post(
    request: Request,
    confirm: str = Form(""),
    users: UserService = Depends(get_users),
):
    """Delete the signed-in user and every one of their sessions."""
    user = await get_current_user(request)
    if not user:
        return RedirectResponse(url="/login", status_code=302)
    if confirm.strip().lower() != "yes":
        return HTMLResponse(
            content=delete_account_page(user.username, error="Please confirm by typing 'yes'"),
            status_code=400,
        )
    await users.delete(user.user_id)
    logger.info(f"User {user.user_id} deleted their account")
    response = HTMLResponse(content=account_deleted_page())
    clear_session_cookie(response)
    return response
