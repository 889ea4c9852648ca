"""Статическая страница для корня и любых путей вне /proxy/"""

import html
from urllib.parse import quote

from core.proxy.settings import ProxySettings

_EXAMPLE_TARGET = 'https://orteil.dashnet.org/cookieclicker/'

_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <title>{title}</title>
  <style>
    body {{ font-family: Arial, sans-serif; max-width: 800px; margin: 0 auto; padding: 20px; }}
    h1 {{ color: #8B5CF6; }}
    .info {{ background: #f5f5f5; padding: 15px; border-radius: 5px; }}
    .tip {{ background: #e8f4fd; padding: 10px; border-radius: 5px; margin: 10px 0; }}
  </style>
</head>
<body>
  <h1>🚀 {title}</h1>
  <div class="info">
    <p><strong>Full Web Proxy is running!</strong></p>
    <p>This proxy rewrites HTML, CSS, and JavaScript to fix all asset links</p>
    <p>Use: <code>/proxy/URL</code> to access websites</p>
    <p>Example: <a href="{example_href}"><code>{example_text}</code></a></p>
  </div>
  <div class="tip">
    <p><strong>Features:</strong></p>
    <ul>
      <li>✅ Rewrites HTML URLs</li>
      <li>✅ Handles JavaScript and CSS</li>
      <li>✅ Processes images and assets</li>
      <li>✅ Fixes relative paths</li>
    </ul>
  </div>
</body>
</html>
"""


def render_landing_page(settings: ProxySettings) -> str:
    """Возвращает HTML информационной страницы"""
    return _TEMPLATE.format(
        title=html.escape(settings.server_name),
        example_href=html.escape(f"{settings.proxy_base}{quote(_EXAMPLE_TARGET, safe='')}"),
        example_text=html.escape(f"{settings.proxy_base}{_EXAMPLE_TARGET}"),
    )
