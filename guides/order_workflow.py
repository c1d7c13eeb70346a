"""Example workflow definitions.

Run a worker for them with:

    queueflow worker run --app guides.order_workflow:registry
"""

import asyncio
import time

from queueflow import StepDeferred, WorkflowRegistry

registry = WorkflowRegistry()


@registry.step("reserve-stock")
async def reserve_stock(order):
    await asyncio.sleep(0.1)
    return {"reservation": f"res-{order['sku']}", "quantity": order["quantity"]}


@registry.step("charge-card")
def charge_card(order, context):
    # Orders may carry an earliest charge time.
    charge_after = order.get("charge_after", 0)
    if time.time() < charge_after:
        raise StepDeferred(charge_after - time.time())
    print(f"Charging {order['amount']} (attempt {context.attempt})")
    return {"charged": order["amount"]}


@registry.step("send-confirmation")
async def send_confirmation(details):
    print(f"Confirmation sent for {details}")
    return {"sent": True}


@registry.workflow("order-fulfilment")
async def order_fulfilment(ctx, order):
    reservation, payment = await ctx.parallel(
        [("reserve-stock", order), ("charge-card", order)]
    )
    # Give the customer a window to cancel before confirming.
    await ctx.sleep(order.get("cancel_window", 5))
    await ctx.step("send-confirmation", {**reservation, **payment})
    return {"reservation": reservation["reservation"], "charged": payment["charged"]}
