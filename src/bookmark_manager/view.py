# src/bookmark_manager/view.py

import typing

from jinja2 import Environment, PackageLoader, select_autoescape

from .controller import ControllerState, Phase

_env = Environment(
    loader=PackageLoader("bookmark_manager", "templates"),
    autoescape=select_autoescape(["html"]),
)

PAGE_TEMPLATES = {
    Phase.LOADING: "loading.html",
    Phase.SIGNED_OUT: "signed_out.html",
    Phase.SIGNED_IN: "signed_in.html",
}


def render_page(state: ControllerState, auth_error: typing.Optional[str] = None) -> str:
    """Full page for whichever phase the controller is in."""
    template = _env.get_template(PAGE_TEMPLATES[state.phase])
    return template.render(state=state, form=state.form, auth_error=auth_error)


def render_bookmark_list(state: ControllerState) -> str:
    """The list fragment that the live-update stream swaps into an open page."""
    if state.phase != Phase.SIGNED_IN:
        return ""
    return _env.get_template("_bookmark_list.html").render(state=state)
