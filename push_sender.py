import json

import requests
from pywebpush import WebPushException, webpush

from logger_config import get_logger
from repositories.job_repo import BackendRequestError

logger = get_logger("push")

GONE_STATUS_CODES = {404, 410}


class PushConfigurationError(RuntimeError):
    pass


def _status_code(exc):
    response = getattr(exc, "response", None)
    return getattr(response, "status_code", None)


class PushSender:
    """Fans a notification out to stored Web Push subscriptions."""

    def __init__(self, repo, vapid_private_key, vapid_mailto="mailto:admin@example.com", send_fn=webpush):
        self.repo = repo
        self.vapid_private_key = vapid_private_key
        self.vapid_mailto = vapid_mailto
        self.send_fn = send_fn

    def send(self, title, body, url=None, target_user_id=None):
        if self.repo is None:
            raise PushConfigurationError("Server Configuration Error")
        if not self.vapid_private_key:
            raise PushConfigurationError("Push Configuration Error")

        subscriptions = self.repo.list_push_subscriptions()
        if target_user_id:
            subscriptions = [s for s in subscriptions if s.get("user_id") == target_user_id]

        payload = json.dumps({"title": title, "body": body, "url": url})
        sent = 0
        failures = []
        for sub in subscriptions:
            try:
                self.send_fn(
                    subscription_info={"endpoint": sub.get("endpoint"), "keys": sub.get("keys") or {}},
                    data=payload,
                    vapid_private_key=self.vapid_private_key,
                    vapid_claims={"sub": self.vapid_mailto},
                )
                sent += 1
            except WebPushException as exc:
                if _status_code(exc) in GONE_STATUS_CODES:
                    self._drop_gone(sub)
                else:
                    logger.error(f"[PUSH] Error sending push to {sub.get('id')}: {exc}")
                failures.append(str(exc))
            except (requests.exceptions.RequestException, ValueError, TypeError) as exc:
                # Unreachable push service or unusable subscription keys
                logger.error(f"[PUSH] Error sending push to {sub.get('id')}: {exc}")
                failures.append(str(exc))

        return {
            "success": True,
            "total": len(subscriptions),
            "sent": sent,
            "failures": failures,
        }

    def _drop_gone(self, sub):
        logger.info(f"[PUSH] Subscription gone, deleting: {sub.get('id')}")
        try:
            self.repo.delete_push_subscription(sub.get("id"))
        except BackendRequestError as exc:
            logger.warning(f"[PUSH] Could not delete subscription {sub.get('id')}: {exc}")


def register_subscription(repo, user_id, subscription, user_agent=""):
    """Delete-then-insert so repeated registrations from one browser stay a single row."""
    subscription = subscription or {}
    endpoint = str(subscription.get("endpoint", "")).strip()
    keys = subscription.get("keys") or {}
    if not endpoint:
        raise ValueError("subscription.endpoint is required")
    if not keys.get("p256dh") or not keys.get("auth"):
        raise ValueError("subscription.keys must include p256dh and auth")
    row = repo.replace_push_subscription(user_id, endpoint, {"p256dh": keys["p256dh"], "auth": keys["auth"]}, user_agent)
    logger.info(f"[PUSH] Registered subscription for user={user_id}")
    return row
