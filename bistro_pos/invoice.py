from pathlib import Path

from jinja2 import Environment, FileSystemLoader, select_autoescape

TEMPLATE_DIR = Path(__file__).parent / "templates"

_env = Environment(
    loader=FileSystemLoader(TEMPLATE_DIR),
    autoescape=select_autoescape(["html"]),
)


def _amount(value, symbol: str) -> str:
    return f"{symbol}{float(value or 0):,.2f}"


_env.filters["amount"] = _amount


def render_invoice(order: dict, currency_symbol: str = "₹") -> str:
    template = _env.get_template("invoice.html")
    return template.render(order=order, symbol=currency_symbol)
