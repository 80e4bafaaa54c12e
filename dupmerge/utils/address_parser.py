"""Address decomposition for address-aware matching.

Splits free-text or structured addresses into street, city and postal code,
expanding the usual street abbreviations so 'Main St.' and 'main street'
compare equal. Handles:
- comma or newline separated free text ('1 Main St, Springfield, IL 62701')
- mappings with street/city/postal keys (several key spellings accepted)
- US ZIP, Canadian and UK postal codes
"""

import re
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Tuple

from .normalize import normalize_text, to_text


@dataclass(frozen=True)
class ParsedAddress:
    """Normalized address components (blank components are '')."""
    street: str = ''
    city: str = ''
    postal_code: str = ''

    def is_blank(self) -> bool:
        return not (self.street or self.city or self.postal_code)


class AddressParser:
    """Parses addresses into comparable components."""

    POSTAL_CODE_PATTERNS = [
        r'\b([A-Z]\d[A-Z]\s?\d[A-Z]\d)\b',  # Canadian (e.g., K1A 0B1)
        r'\b(\d{5}(?:-\d{4})?)\b',  # US ZIP (e.g., 12345 or 12345-6789)
        r'\b([A-Z]{1,2}\d{1,2}[A-Z]?\s?\d[A-Z]{2})\b',  # UK postal code
    ]

    STREET_ABBREVIATIONS = {
        'st': 'street',
        'str': 'street',
        'ave': 'avenue',
        'av': 'avenue',
        'rd': 'road',
        'blvd': 'boulevard',
        'dr': 'drive',
        'ln': 'lane',
        'ct': 'court',
        'pl': 'place',
        'sq': 'square',
        'hwy': 'highway',
        'pkwy': 'parkway',
        'ste': 'suite',
        'apt': 'apartment',
        'fl': 'floor',
        'n': 'north',
        's': 'south',
        'e': 'east',
        'w': 'west',
        'ne': 'northeast',
        'nw': 'northwest',
        'se': 'southeast',
        'sw': 'southwest',
    }

    # US state codes commonly trailing the city ("Springfield IL")
    REGION_CODES = {
        'al', 'ak', 'az', 'ar', 'ca', 'co', 'ct', 'de', 'fl', 'ga', 'hi', 'id', 'il',
        'in', 'ia', 'ks', 'ky', 'la', 'me', 'md', 'ma', 'mi', 'mn', 'ms', 'mo', 'mt',
        'ne', 'nv', 'nh', 'nj', 'nm', 'ny', 'nc', 'nd', 'oh', 'ok', 'or', 'pa', 'ri',
        'sc', 'sd', 'tn', 'tx', 'ut', 'vt', 'va', 'wa', 'wv', 'wi', 'wy', 'dc',
        'on', 'qc', 'bc', 'ab', 'mb', 'sk', 'ns', 'nb', 'nl', 'pe',
    }

    STREET_KEYS = ('street', 'street_address', 'address', 'line1', 'billingstreet', 'mailingstreet')
    CITY_KEYS = ('city', 'town', 'locality', 'billingcity', 'mailingcity')
    POSTAL_KEYS = ('postal_code', 'postalcode', 'postcode', 'zip', 'zip_code', 'zipcode',
                   'billingpostalcode', 'mailingpostalcode')

    @classmethod
    def parse(cls, value: Any) -> ParsedAddress:
        """Parse a string or mapping into a ParsedAddress.

        Args:
            value: Free-text address or mapping of components

        Returns:
            ParsedAddress with normalized components
        """
        if value is None:
            return ParsedAddress()
        if isinstance(value, Mapping):
            return cls._parse_mapping(value)
        return cls._parse_text(to_text(value))

    @classmethod
    def normalize_street(cls, street: str) -> str:
        """Lowercase a street line and expand abbreviations."""
        tokens = normalize_text(street).split()
        return ' '.join(cls.STREET_ABBREVIATIONS.get(t, t) for t in tokens)

    @classmethod
    def normalize_postal_code(cls, postal: str) -> str:
        """Uppercase and strip spaces; US ZIP+4 keeps only the first five digits."""
        code = re.sub(r'\s+', '', to_text(postal)).upper()
        if re.fullmatch(r'\d{5}-?\d{4}', code):
            return code[:5]
        return code

    @classmethod
    def _parse_mapping(cls, value: Mapping) -> ParsedAddress:
        lowered = {str(k).lower(): v for k, v in value.items()}

        def pick(keys: Tuple[str, ...]) -> str:
            for key in keys:
                if lowered.get(key) not in (None, ''):
                    return to_text(lowered[key])
            return ''

        return ParsedAddress(
            street=cls.normalize_street(pick(cls.STREET_KEYS)),
            city=normalize_text(pick(cls.CITY_KEYS)),
            postal_code=cls.normalize_postal_code(pick(cls.POSTAL_KEYS)),
        )

    @classmethod
    def _parse_text(cls, text: str) -> ParsedAddress:
        if not text.strip():
            return ParsedAddress()

        text, postal = cls._extract_postal_code(text)

        pieces = [p.strip() for p in re.split(r'[,\n]+', text) if p.strip()]
        if not pieces:
            return ParsedAddress(postal_code=postal or '')

        street = pieces[0]
        city = ''
        if len(pieces) >= 2:
            city = cls._strip_region(pieces[1])

        return ParsedAddress(
            street=cls.normalize_street(street),
            city=normalize_text(city),
            postal_code=postal or '',
        )

    @classmethod
    def _extract_postal_code(cls, text: str) -> Tuple[str, Optional[str]]:
        upper = text.upper()
        for pattern in cls.POSTAL_CODE_PATTERNS:
            # Postal codes sit at the end; search the last match only
            matches = list(re.finditer(pattern, upper))
            if matches:
                match = matches[-1]
                remaining = text[:match.start()] + text[match.end():]
                return remaining, cls.normalize_postal_code(match.group(1))
        return text, None

    @classmethod
    def _strip_region(cls, piece: str) -> str:
        """Drop a trailing state/province code ('Springfield IL' -> 'Springfield')."""
        tokens = piece.split()
        if len(tokens) > 1 and tokens[-1].lower().strip('.') in cls.REGION_CODES:
            tokens = tokens[:-1]
        return ' '.join(tokens)
