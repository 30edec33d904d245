"""compliance_engine.integrations — narrow interfaces to external collaborators.

Services never talk to the blob store or the notification channel directly;
they go through the objects registered on ``app.extensions``:

  document_store.DocumentStore                 — ``app.extensions["document_store"]``
  notification_dispatcher.NotificationDispatcher — ``app.extensions["notification_dispatcher"]``

``init_integrations(app)`` installs the defaults unless a caller (or a test)
registered its own implementation first.
"""

from compliance_engine.integrations.document_store import SqlDocumentStore
from compliance_engine.integrations.notification_dispatcher import build_dispatcher


def init_integrations(app):
    app.extensions.setdefault("document_store", SqlDocumentStore())
    app.extensions.setdefault("notification_dispatcher", build_dispatcher(app.config))
