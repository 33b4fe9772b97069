"""JavaScript snippets evaluated inside pool-owned pages.

Every builder returns a self-invoking expression so it can be passed to Runtime.evaluate
with returnByValue.
"""

from __future__ import annotations

import json

# Hints used on id/class/aria attributes of cookie and consent banners.
CONSENT_SELECTORS: list[str] = [
    "#onetrust-accept-btn-handler",
    "#accept-cookies",
    "#cookie-accept",
    "button[id*='accept' i]",
    "button[class*='accept' i]",
    "button[aria-label*='accept' i]",
    "button[aria-label*='agree' i]",
    "[class*='cookie' i] button",
    "[id*='cookie' i] button",
    "[class*='consent' i] button",
    "[id*='consent' i] button",
]

CONSENT_TEXT_PATTERNS: list[str] = ["accept", "agree", "allow", "continue"]

NETWORK_IDLE_JS = r"""
(() => {
  if (!window.__relayNetworkIdle) {
    window.__relayNetworkIdle = { lastActivity: Date.now() };
    try {
      const observer = new PerformanceObserver(() => {
        window.__relayNetworkIdle.lastActivity = Date.now();
      });
      observer.observe({ entryTypes: ['resource'] });
    } catch (e) {}
  }
  return Date.now() - window.__relayNetworkIdle.lastActivity > 500;
})()
"""

PAGE_TEXT_JS = "(() => (document.body ? document.body.innerText : '') || '')()"

SCROLL_POSITION_JS = "(() => ({ x: window.scrollX, y: window.scrollY }))()"


def element_center_js(selector: str) -> str:
    """Scroll the element into view and return its visible centre, or null."""
    return f"""
(() => {{
  const el = document.querySelector({json.dumps(selector)});
  if (!el) return null;
  try {{ el.scrollIntoView({{ block: 'center', inline: 'center' }}); }} catch (e) {{}}
  const r = el.getBoundingClientRect();
  if (!r || r.width <= 0 || r.height <= 0) return null;
  return {{ x: r.left + r.width / 2, y: r.top + r.height / 2, tagName: el.tagName }};
}})()
"""


def exists_js(selector: str) -> str:
    return f"!!document.querySelector({json.dumps(selector)})"


def focus_js(selector: str) -> str:
    return f"""
(() => {{
  const el = document.querySelector({json.dumps(selector)});
  if (!el) return false;
  el.focus();
  if ('value' in el && typeof el.select === 'function') {{ try {{ el.select(); }} catch (e) {{}} }}
  return true;
}})()
"""


def text_js(selector: str) -> str:
    return f"""
(() => {{
  const el = document.querySelector({json.dumps(selector)});
  if (!el) return {{ found: false }};
  return {{ found: true, text: el.textContent }};
}})()
"""


def attribute_js(selector: str, attribute: str) -> str:
    return f"""
(() => {{
  const el = document.querySelector({json.dumps(selector)});
  if (!el) return {{ found: false }};
  return {{ found: true, value: el.getAttribute({json.dumps(attribute)}) }};
}})()
"""


def scroll_to_js(x: float, y: float) -> str:
    return f"(() => {{ window.scrollTo({float(x)}, {float(y)}); return {{ x: window.scrollX, y: window.scrollY }}; }})()"


def consent_click_js(selectors: list[str]) -> str:
    """Click the first visible element matching a consent selector."""
    return f"""
(() => {{
  const selectors = {json.dumps(selectors)};
  for (const sel of selectors) {{
    let nodes = [];
    try {{ nodes = Array.from(document.querySelectorAll(sel)); }} catch (e) {{ continue; }}
    for (const el of nodes) {{
      const r = el.getBoundingClientRect?.();
      if (!r || r.width <= 0 || r.height <= 0) continue;
      try {{ el.click(); }} catch (e) {{ continue; }}
      return {{ selector: sel, tagName: el.tagName, text: String(el.innerText || '').trim().slice(0, 80) }};
    }}
  }}
  return null;
}})()
"""


def text_scan_click_js(patterns: list[str]) -> str:
    """Click the first visible clickable element whose text contains one of the patterns.

    Patterns are matched in order, so earlier entries win over later ones.
    """
    return f"""
(() => {{
  const patterns = {json.dumps([p.lower() for p in patterns])};
  const nodes = Array.from(document.querySelectorAll(
    'button, a, [role="button"], input[type="button"], input[type="submit"], [onclick]'
  ));
  const labelOf = (el) => String(
    el.innerText || el.value || el.getAttribute('aria-label') || el.getAttribute('title') || ''
  ).replace(/\\s+/g, ' ').trim();
  const visible = nodes.filter((el) => {{
    const r = el.getBoundingClientRect?.();
    return r && r.width > 0 && r.height > 0;
  }});
  for (const pattern of patterns) {{
    for (const el of visible) {{
      const label = labelOf(el);
      if (!label || !label.toLowerCase().includes(pattern)) continue;
      try {{ el.click(); }} catch (e) {{ continue; }}
      return {{ pattern, text: label.slice(0, 80), tagName: el.tagName }};
    }}
  }}
  return null;
}})()
"""


def page_elements_js(limit: int) -> str:
    """Flatten visible interactive elements with their bounding-box centres."""
    return f"""
(() => {{
  const limit = {int(limit)};
  const nodes = document.querySelectorAll(
    'a, button, input, select, textarea, [role="button"], [role="link"], [onclick], [tabindex]:not([tabindex="-1"])'
  );
  const vw = window.innerWidth || 0;
  const vh = window.innerHeight || 0;
  const out = [];
  for (const el of nodes) {{
    if (out.length >= limit) break;
    const r = el.getBoundingClientRect();
    if (!r || r.width <= 0 || r.height <= 0) continue;
    if (r.bottom < 0 || r.right < 0 || r.top > vh || r.left > vw) continue;
    let st = null;
    try {{ st = window.getComputedStyle(el); }} catch (e) {{}}
    if (st && (st.display === 'none' || st.visibility === 'hidden' || st.opacity === '0')) continue;
    out.push({{
      tagName: el.tagName.toLowerCase(),
      text: String(el.innerText || el.value || '').replace(/\\s+/g, ' ').trim().slice(0, 100),
      ariaLabel: el.getAttribute('aria-label') || '',
      placeholder: el.getAttribute('placeholder') || '',
      href: el.getAttribute('href') || '',
      id: el.id || '',
      className: typeof el.className === 'string' ? el.className.slice(0, 100) : '',
      x: Math.round(r.left + r.width / 2),
      y: Math.round(r.top + r.height / 2),
      width: Math.round(r.width),
      height: Math.round(r.height),
    }});
  }}
  return {{ elements: out, totalCount: nodes.length, url: location.href, title: document.title }};
}})()
"""
