"""QuickPizza: home page, pizza recommendation, unauthorised rating.

The rating request carries no token, so it is expected to come back 401.
Run it with:

    loadscript run examples/quickpizza.py --vus 10 --duration 30
"""

from __future__ import annotations

from loadscript import group, request, scenario, sleep, status_equals

PIZZA_REQUEST = (
    '{"maxCaloriesPerSlice":1000,"mustBeVegetarian":false,"excludedIngredients":[],'
    '"excludedTools":[],"maxNumberOfToppings":5,"minNumberOfToppings":2,"customName":""}'
)

quickpizza = scenario(
    name="QuickPizza",
    base_url="https://quickpizza.grafana.com",
    steps=[
        group("Default group", [
            request("GET", "/", name="Home", checks={
                "status equals 200": status_equals(200),
            }),
            request(
                "POST",
                "/api/pizza",
                name="Create pizza",
                body=PIZZA_REQUEST,
                headers={"authorization": "Token Gck7WTaMAB9NKlM1"},
                checks={"status equals 200": status_equals(200)},
            ),
            request(
                "POST",
                "/api/ratings",
                name="Rate pizza",
                body='{"pizza_id":24596,"stars":5}',
                checks={"status equals 401": status_equals(401)},
            ),
        ]),
        sleep(1),
    ],
)
