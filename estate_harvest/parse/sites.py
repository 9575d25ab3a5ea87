"""Per-site extraction rule sets behind one interface.

Workers only see :class:`ExtractionRules`; each supported site registers a
subclass that layers its quirks (titles packing floor and address together,
photos hidden in inline styles, masked phone numbers) on top of the
declarative YAML rules.
"""
from __future__ import annotations

from typing import Callable, Dict, List, Optional, Type

from bs4 import BeautifulSoup, NavigableString
from pydantic import ValidationError

from estate_harvest.errors import ConfigError, ExtractionError
from estate_harvest.fetch.session import RenderOptions
from estate_harvest.fetch.snapshot import RenderedPage
from estate_harvest.normalize.fields import (
    HIDDEN_PHONE,
    absolute_link,
    background_image_url,
    clean_text,
    normalise_characteristics,
    normalise_phone,
    normalise_photos,
    parse_price,
)
from estate_harvest.orchestrator.target_loader import CrawlTarget
from estate_harvest.parse.rules import (
    RuleSpec,
    click_script,
    load_rule,
    select_pairs,
    select_value,
    strip_elements,
)
from estate_harvest.quality.validate import RecordValidator
from estate_harvest.storage.models import RawFields


def _as_text(value: object) -> str:
    if isinstance(value, list):
        return clean_text(" ".join(str(item) for item in value))
    return clean_text(value if isinstance(value, str) else None)


def _as_list(value: object) -> List[str]:
    if value is None:
        return []
    if isinstance(value, list):
        return [str(item) for item in value]
    return [str(value)]


def _title_parts(soup: BeautifulSoup, selector: str) -> List[str]:
    element = soup.select_one(selector)
    if element is None:
        return []
    return clean_text(element.get_text()).split(",")


class ExtractionRules:
    """Listing-link discovery and record extraction for one target."""

    site: str = ""

    def __init__(
        self,
        spec: RuleSpec,
        *,
        listing_type: str,
        validator: Optional[RecordValidator] = None,
        navigation_timeout: float = 60.0,
    ) -> None:
        self.spec = spec
        self.listing_type = listing_type
        self._validator = validator
        self._navigation_timeout = navigation_timeout

    def listing_render_options(self) -> RenderOptions:
        listing = self.spec.listing
        return RenderOptions(
            wait_for=listing.wait_for,
            scroll=listing.scroll,
            timeout=self._navigation_timeout,
        )

    def detail_render_options(self) -> RenderOptions:
        detail = self.spec.detail
        return RenderOptions(
            wait_for=detail.wait_for,
            js_code=[click_script(selector) for selector in detail.clicks],
            timeout=self._navigation_timeout,
            settle_seconds=detail.settle_seconds,
        )

    def list_item_links(self, page: RenderedPage) -> List[str]:
        """Return absolute, de-duplicated detail links in page order."""
        base = self.spec.listing.base_url or page.url
        links: List[str] = []
        for href in _as_list(select_value(page.soup, self.spec.listing.links)):
            link = absolute_link(href, base)
            if link and link not in links:
                links.append(link)
        return links

    def is_end_of_results(self, page: RenderedPage) -> bool:
        """True when the page carries the site's explicit "nothing found" marker."""
        listing = self.spec.listing
        if not listing.end_marker:
            return False
        for element in page.soup.select(listing.end_marker):
            if listing.end_marker_text is None:
                return True
            if listing.end_marker_text in element.get_text(" ", strip=True):
                return True
        return False

    def collect(self, soup: BeautifulSoup) -> Dict[str, object]:
        """Apply the declarative field rules; subclasses refine the result."""
        detail = self.spec.detail
        strip_elements(soup, detail.remove)
        values: Dict[str, object] = {}
        for name, expression in detail.fields.items():
            values[name] = select_value(soup, expression)
        payload: Dict[str, object] = {
            "price": parse_price(_as_text(values.get("price"))),
            "location": _as_text(values.get("location")),
            "floor": _as_text(values.get("floor")),
            "contact_number": normalise_phone(_as_text(values.get("contact_number"))),
            "photos": normalise_photos(_as_list(values.get("photos")), base_url=detail.photo_base_url),
            "characteristics": {},
            "description": _as_text(values.get("description")),
        }
        if detail.characteristics is not None:
            payload["characteristics"] = normalise_characteristics(select_pairs(soup, detail.characteristics))
        for name, default in detail.defaults.items():
            if not payload.get(name):
                payload[name] = default
        return payload

    def refine(self, soup: BeautifulSoup, payload: Dict[str, object]) -> Dict[str, object]:
        return payload

    def extract_record(self, page: RenderedPage) -> RawFields:
        """Extract the listing on ``page`` or raise ``ExtractionError``; never partial."""
        soup = BeautifulSoup(page.html, "html.parser")
        payload = self.refine(soup, self.collect(soup))
        payload = {key: value for key, value in payload.items() if value is not None}
        if self._validator is not None:
            self._validator.check(page.url, payload)
        try:
            return RawFields.model_validate(payload)
        except ValidationError as exc:
            problems = [f"{'.'.join(str(loc) for loc in err['loc'])}: {err['msg']}" for err in exc.errors()]
            raise ExtractionError(page.url, problems) from exc


_REGISTRY: Dict[str, Type[ExtractionRules]] = {}


def register(site: str) -> Callable[[Type[ExtractionRules]], Type[ExtractionRules]]:
    def decorator(cls: Type[ExtractionRules]) -> Type[ExtractionRules]:
        cls.site = site
        _REGISTRY[site] = cls
        return cls

    return decorator


@register("etagi")
class EtagiRules(ExtractionRules):
    """Photos live in inline background-image styles."""

    def refine(self, soup: BeautifulSoup, payload: Dict[str, object]) -> Dict[str, object]:
        styles = select_value(soup, "div.msUAD.MAfDE@style[]")
        urls = [background_image_url(style) for style in _as_list(styles)]
        if any(urls):
            payload["photos"] = normalise_photos(urls, base_url=self.spec.detail.photo_base_url)
        return payload


@register("krisha")
class KrishaRules(ExtractionRules):
    """Floor and address share the advert title; phones may stay masked."""

    title_selector = "div.offer__advert-title h1"

    def refine(self, soup: BeautifulSoup, payload: Dict[str, object]) -> Dict[str, object]:
        title = _as_text(select_value(soup, self.title_selector))
        if title:
            marker = title.find("этаж")
            if marker != -1:
                payload["floor"] = title[: marker + len("этаж")].strip()
            if ", " in title:
                payload["location"] = title.rsplit(", ", 1)[1].strip()
        if not payload.get("contact_number"):
            payload["contact_number"] = HIDDEN_PHONE
        return payload


@register("kn")
class KnRules(ExtractionRules):
    """Address text sits beside child tags; the street is the fourth title part."""

    title_selector = "div.col-content.title h1"

    def refine(self, soup: BeautifulSoup, payload: Dict[str, object]) -> Dict[str, object]:
        parts = _title_parts(soup, self.title_selector)
        if parts:
            payload["floor"] = clean_text(",".join(parts[:2]))
        address = soup.select_one("div.address")
        if address is not None:
            own_text = "".join(str(node) for node in address.children if isinstance(node, NavigableString))
            street = clean_text(parts[3]) if len(parts) > 3 else ""
            payload["location"] = clean_text(f"{clean_text(own_text)}, {street}")
        return payload


@register("nedvizhka")
class NedvizhkaRules(ExtractionRules):
    """The post title holds floor details first and the address after the fourth comma."""

    title_selector = "h1.postTitle"

    def refine(self, soup: BeautifulSoup, payload: Dict[str, object]) -> Dict[str, object]:
        parts = _title_parts(soup, self.title_selector)
        if parts:
            payload["floor"] = clean_text(",".join(parts[:3]))
            payload["location"] = clean_text(",".join(parts[4:]))
        return payload


@register("nedvizhimostpro")
class NedvizhimostproRules(ExtractionRules):
    """Amenity bullets are appended to the description."""

    def refine(self, soup: BeautifulSoup, payload: Dict[str, object]) -> Dict[str, object]:
        statics = _as_list(select_value(soup, "div.application_statics.mt30 li[]"))
        if statics:
            extra = ", ".join(clean_text(item) for item in statics)
            description = str(payload.get("description") or "")
            payload["description"] = clean_text(f"{description} {extra}")
        return payload


def registered_sites() -> List[str]:
    return sorted(_REGISTRY)


def rules_for(
    target: CrawlTarget,
    *,
    validator: Optional[RecordValidator] = None,
    navigation_timeout: float = 60.0,
) -> ExtractionRules:
    """Build the rule set for ``target`` from its YAML file and site class."""
    try:
        cls = _REGISTRY[target.site]
    except KeyError as exc:
        raise ConfigError(f"No extraction rules registered for site {target.site!r}") from exc
    spec = load_rule(target.rules_path)
    return cls(spec, listing_type=target.listing_type, validator=validator, navigation_timeout=navigation_timeout)
