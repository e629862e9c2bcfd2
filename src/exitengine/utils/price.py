import math


def exit_limit_price(price: float, tick_size: float) -> float:
    """Return the limit price of a take-profit sell order.

    The order rests at the observed ``price``, moved up to the next valid
    ``tick_size`` increment so it never undercuts the trigger level.  A
    ``tick_size`` of ``0`` leaves the price untouched.

    Parameters
    ----------
    price:
        Price the trigger was evaluated at.
    tick_size:
        Minimum price increment for the instrument.
    """

    if tick_size <= 0:
        return price
    steps = math.ceil(round(price / tick_size, 9))
    return round(steps * tick_size, 10)
