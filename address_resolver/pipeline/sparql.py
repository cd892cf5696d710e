from __future__ import annotations

import math

from address_resolver.pipeline.types import MatchStrategy, SaleRecord

PRICE_BAND = 0.05
PRICE_QUERY_LIMIT = 10
YEAR_QUERY_LIMIT = 20

_PREFIXES = """PREFIX lrcommon: <http://landregistry.data.gov.uk/def/common/>
PREFIX lrppi: <http://landregistry.data.gov.uk/def/ppi/>"""

_SELECT = """SELECT ?transx ?pricePaid ?date ?paon ?street ?postcode ?propType ?estateType ?newBuild
WHERE {
  ?transx lrppi:pricePaid ?pricePaid ;
          lrppi:transactionDate ?date ;
          lrppi:propertyAddress ?addr .
  ?addr lrcommon:paon ?paon ;
        lrcommon:street ?street ;
        lrcommon:postcode ?postcode .
  OPTIONAL { ?transx lrppi:propertyType ?propType }
  OPTIONAL { ?transx lrppi:estateType ?estateType }
  OPTIONAL { ?transx lrppi:newBuild ?newBuild }"""


def build_query(strategy: MatchStrategy, sale: SaleRecord, postal_filter: str | None) -> str:
    filters: list[str] = []
    limit = PRICE_QUERY_LIMIT

    if strategy in (MatchStrategy.POSTCODE_YEAR_PRICE, MatchStrategy.POSTCODE_YEAR):
        filters.append(f'FILTER(?postcode = "{_require_filter(strategy, postal_filter)}")')
    elif strategy in (MatchStrategy.OUTCODE_YEAR_PRICE, MatchStrategy.OUTCODE_YEAR):
        # trailing space keeps "SW1" from matching "SW1W ..."
        filters.append(f'FILTER(STRSTARTS(?postcode, "{_require_filter(strategy, postal_filter)} "))')

    filters.append(f"FILTER(YEAR(?date) = {int(sale.year)})")

    if strategy in (MatchStrategy.POSTCODE_YEAR_PRICE, MatchStrategy.OUTCODE_YEAR_PRICE):
        filters.append(f"FILTER(?pricePaid = {int(sale.raw_price)})")
    elif strategy is MatchStrategy.DATE_RANGE:
        low, high = price_band(sale.raw_price)
        filters.append(f"FILTER(?pricePaid >= {low})")
        filters.append(f"FILTER(?pricePaid <= {high})")
    else:
        limit = YEAR_QUERY_LIMIT

    body = "\n".join(f"  {line}" for line in filters)
    return f"{_PREFIXES}\n{_SELECT}\n{body}\n}}\nLIMIT {limit}"


def price_band(raw_price: int) -> tuple[int, int]:
    return math.floor(raw_price * (1 - PRICE_BAND)), math.ceil(raw_price * (1 + PRICE_BAND))


def _require_filter(strategy: MatchStrategy, postal_filter: str | None) -> str:
    if not postal_filter:
        raise ValueError(f"strategy {strategy.value} needs a postal filter")
    return postal_filter
