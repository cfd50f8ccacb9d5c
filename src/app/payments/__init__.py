"""Deal payments -- payment schedules and Stripe Checkout session bookkeeping."""
