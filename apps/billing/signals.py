from django.dispatch import Signal

# Sent after commit whenever a Payment changes status.
# kwargs: payment, previous_status, status
payment_status_changed = Signal()
