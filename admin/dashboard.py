"""
The Back Office - Admin Dashboard
=================================
Streamlit dashboard for TISCO Market, backed by the /api/admin routes.

Features:
- Revenue metrics (today, window, all time, pending)
- Orders by status with office-payment confirmation
- Payment monitor stats and a manual reconciliation cycle
- API health

Run: streamlit run admin/dashboard.py
Env: API_URL (default http://localhost:8000), ADMIN_API_KEY
"""

import os
import time
from typing import Any, Dict, List, Optional

import httpx
import pandas as pd
import streamlit as st


# =============================================================================
# CONFIGURATION
# =============================================================================

class DashboardConfig:
    API_URL = os.getenv("API_URL", "http://localhost:8000").rstrip("/")
    ADMIN_API_KEY = os.getenv("ADMIN_API_KEY", "")
    TIMEOUT_SECONDS = float(os.getenv("DASHBOARD_TIMEOUT", "15"))


config = DashboardConfig()

ORDER_STATUSES = ["pending", "confirmed", "processing", "shipped", "delivered", "cancelled"]


# =============================================================================
# PAGE CONFIG
# =============================================================================

st.set_page_config(
    page_title="TISCO Market - Back Office",
    page_icon="🛒",
    layout="wide",
    initial_sidebar_state="expanded",
)

st.markdown("""
<style>
    .status-healthy { color: #00ff88; }
    .status-warning { color: #ffaa00; }
    .status-critical { color: #ff4444; }
</style>
""", unsafe_allow_html=True)


# =============================================================================
# API HELPERS
# =============================================================================

def api_request(method: str, path: str, **kwargs) -> Dict[str, Any]:
    """Call the back-office API; errors come back as {"error": ...}"""
    headers = {"X-Admin-Key": config.ADMIN_API_KEY}
    try:
        response = httpx.request(
            method,
            f"{config.API_URL}{path}",
            headers=headers,
            timeout=config.TIMEOUT_SECONDS,
            **kwargs,
        )
    except httpx.HTTPError as e:
        return {"error": f"API unreachable: {e}"}

    if response.status_code == 204:
        return {}
    try:
        body = response.json()
    except ValueError:
        body = {"error": response.text}
    if response.is_error and "error" not in body:
        body = {"error": f"HTTP {response.status_code}"}
    return body


@st.cache_data(ttl=30)
def fetch_stats(days: int) -> Dict[str, Any]:
    return api_request("GET", "/api/admin/stats", params={"days": days})


@st.cache_data(ttl=10)
def fetch_orders(status: Optional[str], limit: int) -> List[Dict[str, Any]]:
    params: Dict[str, Any] = {"limit": limit}
    if status:
        params["status"] = status
    body = api_request("GET", "/api/admin/orders", params=params)
    return body.get("orders", []) if "error" not in body else []


@st.cache_data(ttl=10)
def fetch_monitor_stats() -> Dict[str, Any]:
    return api_request("GET", "/api/admin/payments/monitor")


def fetch_health() -> Dict[str, Any]:
    try:
        return httpx.get(f"{config.API_URL}/health", timeout=config.TIMEOUT_SECONDS).json()
    except (httpx.HTTPError, ValueError) as e:
        return {"status": "unreachable", "error": str(e)}


def format_tzs(value: Any) -> str:
    return f"TZS {float(value or 0):,.0f}"


# =============================================================================
# SIDEBAR
# =============================================================================

def render_sidebar():
    """Navigation, quick stats and refresh controls"""
    st.sidebar.title("🛒 Back Office")
    st.sidebar.markdown("---")

    page = st.sidebar.radio(
        "Navigation",
        ["📊 Revenue", "📦 Orders", "🔄 Payment Monitor", "💚 Health"],
        label_visibility="collapsed",
    )

    st.sidebar.markdown("---")
    st.sidebar.subheader("Quick Stats")

    monitor = fetch_monitor_stats()
    if "error" not in monitor:
        st.sidebar.metric("Stuck payment sessions", monitor.get("currently_stuck") or 0)
        st.sidebar.metric("Recovered by monitor", monitor.get("completed", 0))
        if monitor.get("errors"):
            st.sidebar.error(f"⚠️ {monitor['errors']} reconciliation errors")

    st.sidebar.markdown("---")

    if st.sidebar.button("🔄 Refresh Data"):
        st.cache_data.clear()
        st.rerun()

    auto_refresh = st.sidebar.checkbox("Auto-refresh (30s)", value=False)
    return page, auto_refresh


# =============================================================================
# REVENUE
# =============================================================================

def render_revenue():
    st.title("📊 Revenue")

    days = st.slider("Window (days)", 1, 90, 7)
    stats = fetch_stats(days)
    if "error" in stats:
        st.error(f"Error fetching stats: {stats['error']}")
        return

    revenue = stats.get("revenue", {})
    col1, col2, col3, col4 = st.columns(4)
    with col1:
        st.metric("💰 Today", format_tzs(revenue.get("today")))
    with col2:
        st.metric(f"📅 Last {days} days", format_tzs(revenue.get("window")))
    with col3:
        st.metric("🏦 All time", format_tzs(revenue.get("all_time")), delta=f"{revenue.get('paid_orders', 0)} paid")
    with col4:
        st.metric("⏳ Awaiting payment", format_tzs(revenue.get("pending")))

    st.markdown("---")
    st.subheader("Orders by status")

    counts = stats.get("orders_by_status") or {}
    if counts:
        df = pd.DataFrame(
            [(status, counts.get(status, 0)) for status in ORDER_STATUSES],
            columns=["Status", "Orders"],
        )
        st.bar_chart(df.set_index("Status"))
    else:
        st.info("No orders yet")


# =============================================================================
# ORDERS
# =============================================================================

def render_orders():
    st.title("📦 Orders")

    col1, col2 = st.columns([2, 1])
    with col1:
        status = st.selectbox("Status", ["All"] + ORDER_STATUSES)
    with col2:
        limit = st.slider("Show last", 10, 200, 50)

    orders = fetch_orders(None if status == "All" else status, limit)
    if not orders:
        st.info("No orders found")
        return

    df = pd.DataFrame(orders)
    df["created_at"] = pd.to_datetime(df["created_at"]).dt.strftime("%Y-%m-%d %H:%M")
    df["total"] = df["total_amount"].apply(format_tzs)
    df["items"] = df["items"].apply(lambda items: len(items or []))

    def highlight_unpaid(row):
        if row["payment_status"] in ("failed", "cancelled"):
            return ["background-color: #5f1e1e"] * len(row)
        return [""] * len(row)

    display_cols = [c for c in ["id", "status", "payment_status", "payment_method", "total", "items", "created_at"]
                    if c in df.columns]
    st.dataframe(
        df[display_cols].style.apply(highlight_unpaid, axis=1),
        use_container_width=True,
        hide_index=True,
    )

    st.markdown("---")
    st.subheader("Confirm office payment")

    unpaid = [o for o in orders if o.get("payment_status") != "paid"]
    if not unpaid:
        st.success("✅ Every listed order is paid")
        return

    for order in unpaid:
        short_id = str(order["id"])[:8]
        with st.expander(f"Order {short_id}... - {format_tzs(order.get('total_amount'))} ({order.get('status')})"):
            st.write(f"**Payment:** {order.get('payment_status')} via {order.get('payment_method') or '-'}")
            st.write(f"**Ship to:** {order.get('shipping_address') or '-'}")
            if st.button("💳 Mark as paid", key=f"mark_paid_{order['id']}"):
                with st.spinner("Recording payment..."):
                    result = api_request("POST", f"/api/admin/orders/{order['id']}/mark-paid")
                if "error" in result:
                    st.error(f"Failed: {result['error']}")
                else:
                    if result.get("warning"):
                        st.warning(result["warning"])
                    st.success(result.get("message", "Order marked as paid"))
                    st.cache_data.clear()
                    st.rerun()


# =============================================================================
# PAYMENT MONITOR
# =============================================================================

def render_payment_monitor():
    st.title("🔄 Payment Monitor")
    st.markdown("Mobile-money sessions the gateway never called back about")

    stats = fetch_monitor_stats()
    if "error" in stats:
        st.error(f"Error fetching monitor stats: {stats['error']}")
        return

    col1, col2, col3, col4 = st.columns(4)
    with col1:
        st.metric("Loop Status", "🟢 Enabled" if stats.get("enabled") else "🔴 Disabled")
    with col2:
        st.metric("Check Interval", f"{stats.get('interval_seconds', 120)}s")
    with col3:
        st.metric("Stuck Threshold", f"{stats.get('threshold_seconds', 120)}s")
    with col4:
        st.metric("Currently Stuck", stats.get("currently_stuck") or 0)

    st.markdown("---")

    outcomes = ["completed", "failed", "cancelled", "expired", "pending", "errors"]
    df = pd.DataFrame([(o, stats.get(o, 0)) for o in outcomes], columns=["Outcome", "Sessions"])
    st.bar_chart(df.set_index("Outcome"))

    st.write(f"**Cycles run:** {stats.get('cycles', 0)}  |  **Sessions checked:** {stats.get('checked', 0)}")
    st.write(f"**Last run:** {stats.get('last_run_at') or 'never'}")
    if stats.get("last_error"):
        st.warning(f"Last error: {stats['last_error']}")

    if st.button("▶️ Run reconciliation now"):
        with st.spinner("Polling the gateway..."):
            result = api_request("POST", "/api/admin/payments/monitor/run")
        if "error" in result:
            st.error(f"Failed: {result['error']}")
        else:
            st.success(f"Checked {result['result'].get('checked', 0)} sessions")
            st.json(result["result"])
            st.cache_data.clear()


# =============================================================================
# HEALTH
# =============================================================================

def render_health():
    st.title("💚 Health")

    health = fetch_health()
    status = health.get("status", "unknown")
    icon = {"healthy": "🟢", "degraded": "🟡"}.get(status, "🔴")
    st.subheader(f"{icon} API {status}")

    if health.get("error"):
        st.error(health["error"])
        return

    col1, col2, col3 = st.columns(3)
    with col1:
        st.metric("Version", health.get("version", "-"))
    with col2:
        st.metric("Database", health.get("database", "-"))
    with col3:
        st.metric("Rate limit backend", health.get("rate_limit_backend", "-"))
    st.write(f"Uptime: {health.get('uptime_seconds', 0) / 3600:.1f} h")


# =============================================================================
# MAIN
# =============================================================================

def main():
    if not config.ADMIN_API_KEY:
        st.error("ADMIN_API_KEY is not set")
        st.info("Set ADMIN_API_KEY to the API's admin key and API_URL to its base URL")
        return

    page, auto_refresh = render_sidebar()

    if page == "📊 Revenue":
        render_revenue()
    elif page == "📦 Orders":
        render_orders()
    elif page == "🔄 Payment Monitor":
        render_payment_monitor()
    elif page == "💚 Health":
        render_health()

    if auto_refresh:
        time.sleep(30)
        st.rerun()


if __name__ == "__main__":
    main()
