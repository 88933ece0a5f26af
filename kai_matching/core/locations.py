"""
Static South African city table used to resolve location input before the
learned-alias store or the generative model is consulted.
"""

from typing import NamedTuple, Optional


class CityData(NamedTuple):
    city: str
    province: str
    lat: float
    lng: float
    aliases: tuple[str, ...] = ()


SA_CITIES: tuple[CityData, ...] = (
    CityData("Johannesburg", "Gauteng", -26.2041, 28.0473, ("jozi", "joburg", "jhb", "egoli")),
    CityData("Cape Town", "Western Cape", -33.9249, 18.4241, ("cpt", "ct", "kaapstad")),
    CityData("Durban", "KwaZulu-Natal", -29.8587, 31.0218, ("durbs", "dbn", "ethekwini")),
    CityData("Pretoria", "Gauteng", -25.7479, 28.2293, ("pta", "tshwane")),
    CityData("Gqeberha", "Eastern Cape", -33.9608, 25.6022, ("pe", "p.e.", "port elizabeth")),
    CityData("Bloemfontein", "Free State", -29.0852, 26.1596, ("bloem", "bfn")),
    CityData("East London", "Eastern Cape", -33.0292, 27.8546, ("el",)),
    CityData("Polokwane", "Limpopo", -23.9045, 29.4689, ("pietersburg",)),
    CityData("Mbombela", "Mpumalanga", -25.4753, 30.9694, ("nelspruit",)),
    CityData("Kimberley", "Northern Cape", -28.7282, 24.7499),
    CityData("Stellenbosch", "Western Cape", -33.9321, 18.8602, ("stellies",)),
    CityData("Sandton", "Gauteng", -26.1076, 28.0567),
    CityData("Centurion", "Gauteng", -25.8603, 28.1894),
    CityData("Midrand", "Gauteng", -25.9891, 28.1024),
    CityData("Soweto", "Gauteng", -26.2485, 27.854),
    CityData("Paarl", "Western Cape", -33.7342, 18.9622),
    CityData("Franschhoek", "Western Cape", -33.9133, 19.1169),
    CityData("George", "Western Cape", -33.963, 22.4617),
    CityData("Knysna", "Western Cape", -34.0356, 23.0488),
    CityData("Pietermaritzburg", "KwaZulu-Natal", -29.6006, 30.3794, ("pmb",)),
    CityData("Richards Bay", "KwaZulu-Natal", -28.783, 32.0377),
    CityData("Umhlanga", "KwaZulu-Natal", -29.7257, 31.0848),
    CityData("Ballito", "KwaZulu-Natal", -29.5389, 31.214),
    CityData("Rustenburg", "North West", -25.6715, 27.242),
    CityData("Potchefstroom", "North West", -26.7145, 27.0937, ("potch",)),
)

# Default coordinates when nothing resolves (Johannesburg)
DEFAULT_LAT = -26.2041
DEFAULT_LNG = 28.0473


def _build_alias_index() -> dict[str, CityData]:
    index: dict[str, CityData] = {}
    for city in SA_CITIES:
        index[city.city.lower()] = city
        for alias in city.aliases:
            index[alias] = city
    return index


LOCATION_ALIASES: dict[str, CityData] = _build_alias_index()


def normalize_key(text: str) -> str:
    return text.lower().strip()


def lookup_city(text: str) -> Optional[CityData]:
    """Exact lookup by city name or known alias, case-insensitive."""
    return LOCATION_ALIASES.get(normalize_key(text))
