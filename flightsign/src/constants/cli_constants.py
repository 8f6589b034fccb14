from rich.text import Text

__version__ = "0.1.0"

APP_DESCRIPTION = "Certificates, profiles and TestFlight releases without the babysitting"

BANNER = r"""
  __ _ _       _     _       _
 / _| (_) __ _| |__ | |_ ___(_) __ _ _ __
| |_| | |/ _` | '_ \| __/ __| |/ _` | '_ \
|  _| | | (_| | | | | |_\__ \ | (_| | | | |
|_| |_|_|\__, |_| |_|\__|___/_|\__, |_| |_|
         |___/                 |___/
"""


def get_banner_text() -> Text:
    return Text(BANNER, style="bold cyan")
