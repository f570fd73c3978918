# trace/log/metrics（統一格式）
#   統一 log 欄位：trace_id、mode、model、fingerprint、latency、tokens、retry_count、error_type
#   log_helper.init_logging() 設定好的 handler 會接手顯示
import logging
logger = logging.getLogger("assistant_observability")


def _short(fingerprint):
    return (fingerprint or "")[:12]


def log_request(trace_id, mode, model, fingerprint, latency, tokens, retry_count, error_type=None):
    log_data = {
        "trace_id": trace_id,
        "mode": mode,
        "model": model,
        "fingerprint": _short(fingerprint),
        "latency": latency,
        "tokens": tokens,
        "retry_count": retry_count,
    }
    if error_type:
        log_data["error_type"] = error_type
        logger.error(f"AI Request Failed: {log_data}")
    else:
        logger.info(f"AI Request Success: {log_data}")


def log_retry(attempt, max_retries, delay, error):
    log_data = {
        "attempt": attempt,
        "max_retries": max_retries,
        "delay": round(delay, 3),
        "error_type": type(error).__name__,
        "error": str(error),
    }
    logger.warning(f"AI Retry: {log_data}")


def log_rate_limit_wait(wait, in_minute, in_hour):
    log_data = {
        "wait": round(wait, 3),
        "in_minute": in_minute,
        "in_hour": in_hour,
    }
    logger.warning(f"AI Rate Limit Wait: {log_data}")


def log_cache_hit(fingerprint, category, access_count):
    log_data = {
        "fingerprint": _short(fingerprint),
        "category": category,
        "access_count": access_count,
    }
    logger.info(f"AI Cache Hit: {log_data}")


def log_cache_miss(fingerprint, reason):
    log_data = {
        "fingerprint": _short(fingerprint),
        "reason": reason,
    }
    logger.debug(f"AI Cache Miss: {log_data}")


def log_cache_set(fingerprint, category, ttl):
    log_data = {
        "fingerprint": _short(fingerprint),
        "category": category,
        "ttl": ttl,
    }
    logger.debug(f"AI Cache Set: {log_data}")


def log_cache_eviction(namespace, evicted, remaining):
    log_data = {
        "namespace": namespace,
        "evicted": evicted,
        "remaining": remaining,
    }
    logger.info(f"AI Cache Eviction: {log_data}")


def log_cache_cleanup(removed):
    logger.info(f"AI Cache Cleanup: {{'removed': {removed}}}")


def log_cache_invalidation(criteria, removed):
    log_data = {
        "criteria": criteria,
        "removed": removed,
    }
    logger.info(f"AI Cache Invalidation: {log_data}")


def log_cache_clear():
    logger.info("AI Cache Cleared")


def log_fallback(trace_id, mode, error):
    log_data = {
        "trace_id": trace_id,
        "mode": mode,
        "error_type": type(error).__name__,
        "error": str(error),
    }
    logger.warning(f"AI Fallback: {log_data}")


def log_mode_switch(from_mode, to_mode, allowed):
    log_data = {
        "from_mode": from_mode,
        "to_mode": to_mode,
        "allowed": allowed,
    }
    if allowed:
        logger.info(f"AI Mode Switch: {log_data}")
    else:
        logger.warning(f"AI Mode Switch Not Recommended: {log_data}")


def log_storage_failure(trace_id, operation, error):
    log_data = {
        "trace_id": trace_id,
        "operation": operation,
        "error": str(error),
    }
    logger.warning(f"Conversation Storage Error (non-critical): {log_data}")


def log_cache_failure(operation, error):
    log_data = {
        "operation": operation,
        "error_type": type(error).__name__,
        "error": str(error),
    }
    logger.warning(f"AI Cache Error (non-critical): {log_data}")
