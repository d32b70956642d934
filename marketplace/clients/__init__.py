"""HTTP clients for the payment processor and notification delivery transports."""
