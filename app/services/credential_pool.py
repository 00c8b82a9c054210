"""
Provider credential pool with per-key minute and day quotas.

Usage counters live in the database and are only ever changed by a single
conditional UPDATE, so any number of workers or processes can share the pool.
"""
import asyncio
import logging
from datetime import timedelta
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import and_, case, or_, update
from sqlalchemy.exc import SQLAlchemyError

from app.core.clock import day_start, minute_start, utc_now
from app.core.config import settings
from app.core.database import SessionLocal
from app.core.exceptions import PersistenceFailure, ProviderError
from app.core.key_cipher import KeyCipherError, decrypt_key, encrypt_key, fingerprint_key
from app.models.credential import ProviderCredential

logger = logging.getLogger(__name__)

ALPHA_VANTAGE = "alpha_vantage"

# key check verdicts
KEY_VALID = "valid"
KEY_INVALID = "invalid"
KEY_THROTTLED = "throttled"


@dataclass(frozen=True)
class ProviderKey:
    """A reserved credential, ready for one outbound provider call."""
    credential_id: int
    provider: str
    api_key: str = field(repr=False)
    user_id: Optional[int] = None
    key_name: Optional[str] = None


@dataclass(frozen=True)
class NoCapacitySignal:
    """Returned instead of a key when nothing in the pool can serve a call."""
    provider: str
    user_id: Optional[int] = None

    def __bool__(self) -> bool:
        return False


KeyLease = Union[ProviderKey, NoCapacitySignal]


class CredentialPool:
    """Selects, reserves and manages provider API keys"""

    def __init__(self, session_factory=None):
        self._session_factory = session_factory or SessionLocal
        logger.info("Credential pool initialized")

    @staticmethod
    def _eligible_clause(now):
        cred = ProviderCredential
        minute_floor = minute_start(now)
        day_floor = day_start(now)
        return and_(
            cred.is_active.is_(True),
            cred.request_limit > 0,
            cred.daily_request_limit > 0,
            or_(cred.expires_at.is_(None), cred.expires_at > now),
            or_(cred.blocked_until.is_(None), cred.blocked_until <= now),
            or_(
                cred.last_used_at.is_(None),
                cred.last_used_at < minute_floor,
                cred.requests_used < cred.request_limit,
            ),
            or_(
                cred.last_used_at.is_(None),
                cred.last_used_at < day_floor,
                cred.daily_requests_used < cred.daily_request_limit,
            ),
        )

    def _candidate_ids(self, provider: str, user_id: Optional[int], now) -> List[int]:
        cred = ProviderCredential
        db = self._session_factory()
        try:
            query = db.query(cred.id).filter(cred.provider == provider, self._eligible_clause(now))
            if user_id is None:
                query = query.filter(cred.user_id.is_(None))
            else:
                query = query.filter(cred.user_id == user_id)
            # least recently used first, never-used keys ahead of everything
            query = query.order_by(
                cred.last_used_at.is_(None).desc(),
                cred.last_used_at.asc(),
                cred.id.asc(),
            )
            return [row[0] for row in query.all()]
        finally:
            db.close()

    def acquire_key(self, provider: str, user_id: Optional[int] = None) -> KeyLease:
        """
        Reserve one call's worth of quota on the best available credential.

        A key scoped to ``user_id`` wins over the shared pool. Within a scope
        the least recently used eligible key is tried first; when its
        reservation loses a race the next one is tried.

        Returns:
            ProviderKey on success, NoCapacitySignal when no key is usable
        """
        now = utc_now()
        scopes: List[Optional[int]] = [user_id] if user_id is not None else []
        scopes.append(None)

        for scope in scopes:
            for candidate_id in self._candidate_ids(provider, scope, now):
                if not self.record_usage(candidate_id, now=now):
                    continue
                lease = self._load_key(candidate_id)
                if lease is not None:
                    return lease

        logger.warning(f"No {provider} credential has remaining capacity (user_id={user_id})")
        return NoCapacitySignal(provider=provider, user_id=user_id)

    def record_usage(self, credential_id: int, now=None) -> bool:
        """
        Count one call against a credential.

        Window resets and the increment happen in the same statement, and the
        WHERE clause re-checks every limit, so concurrent callers can never push
        a counter past its limit. Returns False if the key was not eligible.
        """
        now = now or utc_now()
        cred = ProviderCredential
        minute_rolled = or_(cred.last_used_at.is_(None), cred.last_used_at < minute_start(now))
        day_rolled = or_(cred.last_used_at.is_(None), cred.last_used_at < day_start(now))

        stmt = (
            update(cred)
            .where(cred.id == credential_id, self._eligible_clause(now))
            .values(
                requests_used=case((minute_rolled, 1), else_=cred.requests_used + 1),
                daily_requests_used=case((day_rolled, 1), else_=cred.daily_requests_used + 1),
                total_requests=cred.total_requests + 1,
                last_used_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )

        db = self._session_factory()
        try:
            result = db.execute(stmt)
            db.commit()
            return result.rowcount == 1
        except SQLAlchemyError as e:
            db.rollback()
            raise PersistenceFailure(
                f"Failed to record usage for credential {credential_id}",
                {"credential_id": credential_id},
            ) from e
        finally:
            db.close()

    def _load_key(self, credential_id: int) -> Optional[ProviderKey]:
        db = self._session_factory()
        try:
            row = db.get(ProviderCredential, credential_id)
            if row is None:
                return None
            try:
                plain = decrypt_key(row.api_key)
            except KeyCipherError as e:
                logger.error(f"Credential {credential_id} cannot be decrypted, deactivating: {e}")
                row.is_active = False
                db.commit()
                return None
            return ProviderKey(
                credential_id=row.id,
                provider=row.provider,
                api_key=plain,
                user_id=row.user_id,
                key_name=row.key_name,
            )
        finally:
            db.close()

    def add_credential(
        self,
        provider: str,
        api_key: str,
        user_id: Optional[int] = None,
        key_name: Optional[str] = None,
        request_limit: Optional[int] = None,
        daily_request_limit: Optional[int] = None,
        expires_at=None,
        registration_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> int:
        """Store a key (encrypted). Returns the id of the new or already known credential."""
        plain = (api_key or "").strip()
        if not plain:
            raise ValueError("api_key cannot be empty")

        fingerprint = fingerprint_key(plain)
        db = self._session_factory()
        try:
            existing = (
                db.query(ProviderCredential)
                .filter(
                    ProviderCredential.provider == provider,
                    ProviderCredential.key_fingerprint == fingerprint,
                )
                .first()
            )
            if existing is not None:
                return existing.id

            row = ProviderCredential(
                provider=provider,
                user_id=user_id,
                key_name=key_name,
                api_key=encrypt_key(plain),
                key_fingerprint=fingerprint,
                is_active=True,
                requests_used=0,
                daily_requests_used=0,
                total_requests=0,
                request_limit=request_limit or settings.ALPHA_VANTAGE_REQUESTS_PER_MINUTE,
                daily_request_limit=daily_request_limit or settings.ALPHA_VANTAGE_REQUESTS_PER_DAY,
                expires_at=expires_at,
                registration_id=registration_id,
                details=details,
            )
            db.add(row)
            db.commit()
            logger.info(f"Added {provider} credential {row.id} ({fingerprint[:8]})")
            return row.id
        except SQLAlchemyError as e:
            db.rollback()
            raise PersistenceFailure(f"Failed to store {provider} credential", {"provider": provider}) from e
        finally:
            db.close()

    def deactivate(self, credential_id: int) -> bool:
        return self._update(credential_id, is_active=False, updated_at=utc_now())

    def block(self, credential_id: int, seconds: float, reason: str = "") -> bool:
        """Keep a key out of rotation for ``seconds``, e.g. after a throttle notice."""
        now = utc_now()
        blocked = self._update(
            credential_id,
            blocked_until=now + timedelta(seconds=seconds),
            block_reason=reason[:200] if reason else None,
            updated_at=now,
        )
        if blocked:
            logger.warning(f"Credential {credential_id} blocked for {seconds:.0f}s: {reason}")
        return blocked

    def _update(self, credential_id: int, **values) -> bool:
        db = self._session_factory()
        try:
            result = db.execute(
                update(ProviderCredential)
                .where(ProviderCredential.id == credential_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            db.commit()
            return result.rowcount == 1
        except SQLAlchemyError as e:
            db.rollback()
            raise PersistenceFailure(
                f"Failed to update credential {credential_id}",
                {"credential_id": credential_id},
            ) from e
        finally:
            db.close()

    def sync_from_settings(self) -> int:
        """Seed the shared Alpha Vantage pool from configuration. Returns keys added."""
        added = 0
        db = self._session_factory()
        try:
            known = {
                row[0]
                for row in db.query(ProviderCredential.key_fingerprint)
                .filter(ProviderCredential.provider == ALPHA_VANTAGE)
                .all()
            }
        finally:
            db.close()

        for index, key in enumerate(settings.get_alpha_vantage_keys()):
            if fingerprint_key(key) in known:
                continue
            self.add_credential(ALPHA_VANTAGE, key, key_name=f"env:{index}", details={"source": "settings"})
            added += 1

        if added:
            logger.info(f"Seeded {added} Alpha Vantage key(s) from settings")
        return added

    def get_pool_stats(self, provider: str) -> Dict[str, Any]:
        now = utc_now()
        today = day_start(now)
        db = self._session_factory()
        try:
            rows = db.query(ProviderCredential).filter(ProviderCredential.provider == provider).all()
            eligible_ids = {
                row[0]
                for row in db.query(ProviderCredential.id)
                .filter(ProviderCredential.provider == provider, self._eligible_clause(now))
                .all()
            }
        finally:
            db.close()

        active = [row for row in rows if row.is_active]
        requests_today = 0
        remaining_today = 0
        for row in active:
            used_today = row.daily_requests_used if row.last_used_at and row.last_used_at >= today else 0
            requests_today += used_today
            remaining_today += max(row.daily_request_limit - used_today, 0)

        return {
            "provider": provider,
            "total": len(rows),
            "active": len(active),
            "available": len(eligible_ids),
            "user_scoped": sum(1 for row in rows if row.user_id is not None),
            "blocked": sum(1 for row in active if row.blocked_until and row.blocked_until > now),
            "expired": sum(1 for row in rows if row.expires_at and row.expires_at <= now),
            "requests_today": requests_today,
            "remaining_daily_capacity": remaining_today,
            "total_requests": sum(row.total_requests or 0 for row in rows),
            "timestamp": now.isoformat(),
        }

    async def auto_register(self, email: str, registrar=None) -> Optional[int]:
        """
        Provision a new Alpha Vantage key for ``email`` and add it to the shared pool.

        Does nothing unless ALPHA_VANTAGE_AUTO_REGISTER is on. Addresses on the
        skip list and addresses that already own a key are ignored.
        """
        if not settings.ALPHA_VANTAGE_AUTO_REGISTER:
            logger.info("Alpha Vantage auto registration disabled")
            return None

        normalized = (email or "").strip().lower()
        if not normalized or "@" not in normalized:
            logger.warning("Auto registration skipped: invalid email")
            return None
        if normalized in settings.get_skip_emails():
            logger.info(f"Auto registration skipped for deny-listed address {normalized}")
            return None

        db = self._session_factory()
        try:
            existing = (
                db.query(ProviderCredential.id)
                .filter(
                    ProviderCredential.provider == ALPHA_VANTAGE,
                    ProviderCredential.registration_id == normalized,
                )
                .first()
            )
        finally:
            db.close()
        if existing is not None:
            return existing[0]

        if registrar is None:
            from app.services.alpha_vantage_registration import AlphaVantageRegistrationClient
            registrar = AlphaVantageRegistrationClient()

        api_key = await asyncio.to_thread(registrar.register, normalized)
        if not api_key:
            logger.warning(f"Auto registration for {normalized} did not yield a key")
            return None

        return self.add_credential(
            ALPHA_VANTAGE,
            api_key,
            key_name=f"auto:{normalized}",
            registration_id=normalized,
            details={"auto_registered": True, "registered_at": utc_now().isoformat()},
        )

    async def validate_keys(self, provider: str, checker, pause_seconds: Optional[float] = None) -> Dict[str, List[int]]:
        """
        Check every active key of ``provider`` with one real call.

        ``checker`` is an async callable taking a plain API key and returning
        KEY_VALID, KEY_INVALID or KEY_THROTTLED. Invalid keys are deactivated,
        throttled keys are blocked. Each check is counted against the key's
        quota, so keys without capacity right now are reported as unchecked.
        """
        if pause_seconds is None:
            pause_seconds = settings.KEY_VALIDATION_PAUSE_SECONDS

        db = self._session_factory()
        try:
            ids = [
                row[0]
                for row in db.query(ProviderCredential.id)
                .filter(ProviderCredential.provider == provider, ProviderCredential.is_active.is_(True))
                .order_by(ProviderCredential.id)
                .all()
            ]
        finally:
            db.close()

        results: Dict[str, List[int]] = {"valid": [], "invalid": [], "blocked": [], "unchecked": []}
        for index, credential_id in enumerate(ids):
            if index and pause_seconds:
                await asyncio.sleep(pause_seconds)

            if not self.record_usage(credential_id):
                results["unchecked"].append(credential_id)
                continue
            lease = self._load_key(credential_id)
            if lease is None:
                results["invalid"].append(credential_id)
                continue

            try:
                verdict = await checker(lease.api_key)
            except ProviderError as e:
                logger.warning(f"Could not validate credential {credential_id}: {e}")
                results["unchecked"].append(credential_id)
                continue

            if verdict == KEY_INVALID:
                self.deactivate(credential_id)
                results["invalid"].append(credential_id)
            elif verdict == KEY_THROTTLED:
                self.block(credential_id, settings.ALPHA_VANTAGE_RATE_LIMIT_BLOCK_SECONDS, "throttled during validation")
                results["blocked"].append(credential_id)
            else:
                results["valid"].append(credential_id)

        logger.info(
            f"{provider} key validation: {len(results['valid'])} valid, {len(results['invalid'])} invalid, "
            f"{len(results['blocked'])} blocked, {len(results['unchecked'])} unchecked"
        )
        return results
