"""
Dewey-style call numbers for new catalog entries: DDD-AUTH-YEAR,
e.g. 500-SAGA-1980 for a science title by Carl Sagan.
"""

DDC_MAPPING = {
    "Science": "500",
    "Math": "510",
    "Filipino": "820",
    "English": "820",
    "Fiction": "800",
    "History": "900",
    "Biography": "920",
    "Technology": "600",
    "Medicine": "610",
    "Philosophy": "100",
    "Psychology": "150",
    "Social Sciences": "300",
    "Religion": "200",
    "Art": "700",
    "Music": "780",
    "Sports": "790",
}
DEFAULT_DDC = "000"


def ddc_code(category):
    if not category or not category.strip():
        return DEFAULT_DDC
    category = category.strip()
    if category in DDC_MAPPING:
        return DDC_MAPPING[category]

    lowered = category.lower()
    for key, code in DDC_MAPPING.items():
        key = key.lower()
        if key in lowered or lowered in key:
            return code
    return DEFAULT_DDC


def author_code(author):
    if not author or not author.strip():
        return "ANON"
    surname = author.strip().split()[-1]
    letters = "".join(ch for ch in surname if ch.isalpha())
    return (letters[:4] or "ANON").upper()


def generate_call_number(category, author, year=None):
    parts = [ddc_code(category), author_code(author)]
    if year:
        parts.append(str(year))
    return "-".join(parts)
