"""Retirement quick-calculator adapter.

Runs in an isolated child process; only the capability context is
available. A verification challenge, when shown, is handed to a human.
"""

from sandbox.sdk import Adapter, Tool, failure, success

CALCULATOR_URL = "https://retirement.example.gov/quickcalc/"


def full_retirement_age(birth_year: int) -> str:
    if birth_year <= 1937:
        return "65"
    if birth_year <= 1942:
        return f"65 and {(birth_year - 1937) * 2} months"
    if birth_year <= 1954:
        return "66"
    if birth_year <= 1959:
        return f"66 and {(birth_year - 1954) * 2} months"
    return "67"


async def init(context):
    if "retirement.example.gov" in context.page.current_url():
        context.notify.info("Retirement estimator ready.")


async def estimate_benefit(params, context):
    page, utils = context.page, context.utils
    birth_year = int(params["birth_year"])

    await page.navigate(CALCULATOR_URL, ready_selector="#calc-form")
    await page.fill_field("#dob-month", str(params.get("birth_month", 6)))
    await page.fill_field("#dob-day", str(params.get("birth_day", 15)))
    await page.fill_field("#dob-year", str(birth_year))
    await page.fill_field("#earnings", str(params["annual_earnings"]))
    await page.select_option("#dollar-type", params.get("dollar_type", "today"))
    await page.click("#calculate")

    if await page.exists("#verification-challenge"):
        await page.wait_for_human("Complete the verification check on the calculator page")

    await page.wait_for_selector("#results")
    at_62 = utils.parse_amount(await page.get_text("#benefit-62"))
    at_fra = utils.parse_amount(await page.get_text("#benefit-fra"))
    at_70 = utils.parse_amount(await page.get_text("#benefit-70"))
    if at_fra is None:
        return failure("Calculator page did not show an estimate", "SITE_CHANGED")

    estimate = {
        "at_62": at_62,
        "at_full_retirement_age": at_fra,
        "at_70": at_70,
        "full_retirement_age": full_retirement_age(birth_year),
        "summary": f"About {utils.format_currency(at_fra)} per month at full retirement age",
    }
    await context.storage.set("last_estimate", estimate)
    return success(**estimate)


async def last_estimate(params, context):
    estimate = await context.storage.get("last_estimate")
    if estimate is None:
        return failure("No estimate has been run yet", "VALIDATION_ERROR")
    return success(**estimate)


adapter = Adapter(
    id="gov.example.retirement",
    init=init,
    tools=[
        Tool(
            name="estimate_benefit",
            description="Estimate monthly retirement benefits at 62, full retirement age and 70.",
            execute=estimate_benefit,
            input_schema={
                "type": "object",
                "properties": {
                    "birth_year": {"type": "integer", "minimum": 1924, "maximum": 2005},
                    "birth_month": {"type": "integer", "minimum": 1, "maximum": 12},
                    "birth_day": {"type": "integer", "minimum": 1, "maximum": 31},
                    "annual_earnings": {"type": "number", "minimum": 0},
                    "dollar_type": {"type": "string", "enum": ["today", "future"]},
                },
                "required": ["birth_year", "annual_earnings"],
            },
        ),
        Tool(
            name="last_estimate",
            description="Return the most recent estimate saved by estimate_benefit.",
            execute=last_estimate,
        ),
    ],
)
