from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta
import math
import random
from typing import List, Optional, Sequence

from customer_dna.foundation.transactions import Transaction


@dataclass(frozen=True)
class Customer:
    customer_id: str
    acquisition_date: date
    cycle_days: float
    scopes: tuple[str, ...]


@dataclass(frozen=True)
class ScenarioConfig:
    """Configuration for scenario-based generators.

    Attributes
    ----------
    cycle_shape: Gamma shape of each customer's inter-purchase time; higher is
        more regular.
    one_time_buyer_share: Probability that a customer never returns.
    churn_hazard: Probability of churning before each repeat purchase.
    mean_order_value: Average purchase amount.
    price_variability: Coefficient in (0, 1] controlling amount variance.
    seed: Optional RNG seed for reproducibility.
    """

    cycle_shape: float = 2.0
    one_time_buyer_share: float = 0.35
    churn_hazard: float = 0.08
    mean_order_value: float = 40.0
    price_variability: float = 0.4
    seed: Optional[int] = None

    def __post_init__(self) -> None:
        if self.cycle_shape <= 0:
            raise ValueError(f"cycle_shape must be positive, got {self.cycle_shape}")
        if not 0 <= self.one_time_buyer_share <= 1:
            raise ValueError(
                f"one_time_buyer_share must be in [0, 1], got {self.one_time_buyer_share}"
            )
        if not 0 <= self.churn_hazard <= 1:
            raise ValueError(f"churn_hazard must be in [0, 1], got {self.churn_hazard}")


def generate_customers(
    n: int,
    start: date,
    end: date,
    *,
    scopes: Sequence[str] = ("A", "B"),
    multi_scope_share: float = 0.2,
    mean_cycle_days: float = 30.0,
    seed: Optional[int] = None,
) -> List[Customer]:
    """Generate ``n`` customers with acquisition dates uniformly between start/end.

    Each customer shops in one scope, or in two with probability
    ``multi_scope_share``, and gets an individual purchase cycle drawn around
    ``mean_cycle_days``.
    """

    if n <= 0:
        return []
    if start > end:
        raise ValueError("start date must be <= end date")
    if not scopes:
        raise ValueError("at least one scope is required")

    rng = random.Random(seed)
    total_days = (end - start).days + 1
    scope_list = list(scopes)

    customers: List[Customer] = []
    for i in range(n):
        offset = rng.randrange(total_days)
        acq = start + timedelta(days=offset)
        if len(scope_list) > 1 and rng.random() < multi_scope_share:
            customer_scopes = tuple(sorted(rng.sample(scope_list, 2)))
        else:
            customer_scopes = (rng.choice(scope_list),)
        # Gamma(2) spread of individual cycles around the population mean
        cycle = max(1.0, rng.gammavariate(2.0, mean_cycle_days / 2.0))
        customers.append(
            Customer(
                customer_id=f"C-{i + 1}",
                acquisition_date=acq,
                cycle_days=cycle,
                scopes=customer_scopes,
            )
        )
    return customers


def _sample_amount(rng: random.Random, mean: float, variability: float) -> float:
    variability = min(max(variability, 0.01), 1.0)
    # Log-normal-ish by exponentiating a normal draw for positivity
    sigma = variability
    mu = math.log(max(mean, 0.01)) - 0.5 * sigma * sigma
    amount = math.exp(rng.normalvariate(mu, sigma))
    return round(max(amount, 0.01), 2)


def generate_transactions(
    customers: Sequence[Customer],
    end: date,
    *,
    scenario: Optional[ScenarioConfig] = None,
) -> List[Transaction]:
    """Generate purchases for customers from acquisition up to ``end``.

    Every customer buys on the acquisition date. Unless they are a one-time
    buyer, they keep buying after Gamma-distributed gaps around their own
    cycle until they churn or ``end`` is reached.
    """

    scenario = scenario or ScenarioConfig()
    rng = random.Random(scenario.seed)
    horizon = datetime(end.year, end.month, end.day, 23, 59, 59)

    transactions: List[Transaction] = []
    for cust in customers:
        if cust.acquisition_date > end:
            continue
        ts = datetime(
            cust.acquisition_date.year,
            cust.acquisition_date.month,
            cust.acquisition_date.day,
            9 + rng.randrange(0, 10),
            rng.randrange(0, 60),
        )
        is_one_time = rng.random() < scenario.one_time_buyer_share
        while True:
            transactions.append(
                Transaction(
                    customer_id=cust.customer_id,
                    timestamp=ts,
                    amount=_sample_amount(
                        rng, scenario.mean_order_value, scenario.price_variability
                    ),
                    scope_key=rng.choice(cust.scopes),
                )
            )
            if is_one_time or rng.random() < scenario.churn_hazard:
                break
            gap_days = rng.gammavariate(
                scenario.cycle_shape, cust.cycle_days / scenario.cycle_shape
            )
            ts = ts + timedelta(days=gap_days)
            if ts > horizon:
                break

    transactions.sort(key=lambda t: (t.customer_id, t.timestamp))
    return transactions
