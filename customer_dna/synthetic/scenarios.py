"""Pre-configured scenario packs for synthetic data generation.

Examples
--------
>>> from customer_dna.synthetic.scenarios import HIGH_CHURN_SCENARIO
>>> from customer_dna.synthetic import generate_customers, generate_transactions
>>> from datetime import date
>>>
>>> customers = generate_customers(500, date(2023, 1, 1), date(2023, 12, 31), seed=7)
>>> transactions = generate_transactions(
...     customers, date(2023, 12, 31), scenario=HIGH_CHURN_SCENARIO
... )
"""

from customer_dna.synthetic.generator import ScenarioConfig

# Moderate behaviour, useful for general testing
BASELINE_SCENARIO = ScenarioConfig()

# Struggling retention: many one-time buyers and a high per-purchase churn
HIGH_CHURN_SCENARIO = ScenarioConfig(
    one_time_buyer_share=0.6,
    churn_hazard=0.35,
    mean_order_value=30.0,
    price_variability=0.5,
)

# Regular repeat buyers with tight cycles (subscription-like replenishment)
LOYAL_BASE_SCENARIO = ScenarioConfig(
    cycle_shape=8.0,
    one_time_buyer_share=0.1,
    churn_hazard=0.02,
    mean_order_value=55.0,
    price_variability=0.3,
)
