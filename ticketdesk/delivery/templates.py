from jinja2 import Environment, DictLoader, select_autoescape


_FOOTER = r"""
        <hr style="border:none;border-top:1px solid #eee;margin:2rem 0 1rem"/>
        <p style="color:#888;font-size:12px">
          {{ event.name }} · {{ event.date }} {{ event.time }} · {{ event.venue }}
        </p>
"""

TEMPLATES = {
    "transfer_completed.html": r"""
    <html>
      <head><meta charset='utf-8'><title>Transfer Confirmed</title></head>
      <body style="font-family:system-ui;margin:2rem">
        <h3>Thanks {{ sale.customerInfo.firstName }}, we got your transfer notice</h3>
        <p>
          We have recorded your bank transfer for
          <strong>{{ sale.ticketInfo.quantity }} × {{ sale.ticketInfo.typeName }}</strong>
          ({{ sale.paymentInfo.currency }} {{ "{:,}".format(sale.paymentInfo.amount) }}).
        </p>
        <p>Reference: <strong>{{ sale.reference }}</strong></p>
        <p>
          Our team verifies every transfer by hand. Your tickets will be emailed
          to you as soon as the payment is confirmed.
        </p>
    """ + _FOOTER + r"""
      </body>
    </html>
    """,

    "ticket_email.html": r"""
    <html>
      <head><meta charset='utf-8'><title>Your Tickets</title></head>
      <body style="font-family:system-ui;margin:2rem">
        <h3>Your tickets are confirmed, {{ sale.customerInfo.firstName }}!</h3>
        <p>
          {{ sale.ticketInfo.quantity }} × {{ sale.ticketInfo.typeName }} ·
          {{ sale.paymentInfo.currency }} {{ "{:,}".format(sale.paymentInfo.amount) }} ·
          reference <strong>{{ sale.reference }}</strong>
        </p>
        {% if sale.tickets %}
          {% for t in sale.tickets %}
          <div style="margin:1rem 0">
            <p>Ticket {{ loop.index }}: <strong>{{ t.ticketId }}</strong></p>
            {% if t.qrCode %}<img src="{{ t.qrCode }}" alt="QR {{ t.ticketId }}" width="200"/>{% endif %}
          </div>
          {% endfor %}
        {% else %}
          <p>Ticket ID: <strong>{{ sale.ticketId }}</strong></p>
          {% if sale.qrCode %}<img src="{{ sale.qrCode }}" alt="QR {{ sale.ticketId }}" width="200"/>{% endif %}
        {% endif %}
        <p>Show the QR code at the entrance. Each code admits once.</p>
    """ + _FOOTER + r"""
      </body>
    </html>
    """,

    "payment_rejection.html": r"""
    <html>
      <head><meta charset='utf-8'><title>Payment Verification Required</title></head>
      <body style="font-family:system-ui;margin:2rem">
        <h3>We could not verify your payment</h3>
        <p>Hi {{ sale.customerInfo.firstName }},</p>
        <p>
          We were unable to confirm the bank transfer for reference
          <strong>{{ sale.reference }}</strong>.
        </p>
        {% if reason %}<p><strong>Reason:</strong> {{ reason }}</p>{% endif %}
        <p>If you believe this is a mistake, reply to this email with your transfer receipt.</p>
    """ + _FOOTER + r"""
      </body>
    </html>
    """,

    "reminder.html": r"""
    <html>
      <head><meta charset='utf-8'><title>Payment Verification Reminder</title></head>
      <body style="font-family:system-ui;margin:2rem">
        {% if suspicious %}
        <h3>Your payment is still awaiting verification</h3>
        <p>
          Your transfer for <strong>{{ sale.reference }}</strong> has been pending for an
          unusually long time. Please reply with your transfer receipt so we can
          resolve it quickly.
        </p>
        {% else %}
        <h3>We are still verifying your payment</h3>
        <p>
          Your transfer for <strong>{{ sale.reference }}</strong> is in our
          verification queue. No action is needed yet.
        </p>
        {% endif %}
    """ + _FOOTER + r"""
      </body>
    </html>
    """,
}

env = Environment(loader=DictLoader(TEMPLATES), autoescape=select_autoescape(["html"]))


def render(name: str, **ctx) -> str:
    tpl = env.get_template(name)
    return tpl.render(**ctx)
