import dataclasses
import json
import math
import time
import streamlit as st
import pandas as pd

from lava.config import ScenarioConfig
from lava.core import ASSET_DECIMALS, parse_units
from lava.engine import SimulationEngine
from lava.errors import VaultError

st.set_page_config(page_title="Lava Vault Simulator", layout="wide")


def get_engine() -> SimulationEngine:
    if "engine" not in st.session_state:
        cfg = ScenarioConfig()
        st.session_state.cfg = cfg
        st.session_state.seed = 1
        st.session_state.engine = SimulationEngine(cfg=cfg, seed=st.session_state.seed)
    return st.session_state.engine


def reset_engine(reset_config: bool = False) -> None:
    if reset_config:
        cfg = ScenarioConfig()
        seed = 1
        st.session_state.cfg = cfg
        st.session_state.seed = seed
    else:
        cfg = st.session_state.get("cfg", ScenarioConfig())
        seed = st.session_state.get("seed", 1)
    st.session_state.engine = SimulationEngine(cfg=cfg, seed=seed)


engine = get_engine()

st.title("Lava Vault Simulator")
st.caption("Time model: 1 tick = 1 week. Amounts in BTC / USDC unless noted.")

def _fmt_duration(seconds: float) -> str:
    if seconds < 0:
        seconds = 0.0
    mins = int(seconds // 60)
    secs = seconds - (mins * 60)
    return f"{mins}m {secs:0.1f}s"

def _fmt(value: float, digits: int = 2) -> str:
    value = float(value)
    if math.isnan(value):
        return "n/a"
    if math.isinf(value):
        return "∞"
    return f"{value:,.{digits}f}"

def _btc(amount: int) -> float:
    return amount / 10 ** ASSET_DECIMALS

def _render_kpi_grid(kpis, columns: int = 5) -> None:
    for idx in range(0, len(kpis), columns):
        row = kpis[idx: idx + columns]
        cols = st.columns(columns)
        for col, (label, value) in zip(cols, row):
            col.metric(label, value)

def _format_event_meta(meta) -> str:
    if meta is None:
        return ""
    if isinstance(meta, str):
        return meta
    try:
        return json.dumps(meta, sort_keys=True)
    except TypeError:
        return str(meta)

BATCH_PARAM_SPECS = [
    ("deposit_prob", "Deposit probability", float),
    ("withdraw_prob", "Withdraw probability", float),
    ("deposit_mean_btc", "Mean deposit (BTC)", float),
    ("withdraw_share_mean", "Mean redeemed share", float),
    ("zentra_supply_rate", "Zentra rate (per tick)", float),
    ("satsuma_lp_rate", "Satsuma rate (per tick)", float),
    ("yield_source_rate", "Yield source rate (per tick)", float),
    ("price_drift_sigma", "Price drift sigma", float),
    ("harvest_stride_ticks", "Harvest stride (ticks)", int),
    ("rebalance_stride_ticks", "Rebalance stride (ticks)", int),
    ("shock_locked_fraction", "Shock locked fraction", float),
]

def _parse_sweep_values(text: str, value_type: type) -> list:
    values = []
    for part in text.split(","):
        part = part.strip()
        if not part:
            continue
        try:
            if value_type is int:
                values.append(int(float(part)))
            else:
                values.append(float(part))
        except ValueError:
            continue
    return values

def _run_action(label: str, fn) -> None:
    try:
        result = fn()
    except VaultError as exc:
        st.error(f"{label} failed: {exc.code}: {exc}")
        return
    engine.snapshot_metrics()
    st.success(f"{label}: {result}")

with st.sidebar:
    st.header("Sim Controls")

    st.subheader("Run")
    if st.button("Restart simulation"):
        reset_engine(reset_config=True)
        engine = st.session_state.engine
        st.session_state.run_progress = 0.0
        st.session_state.run_progress_label = "Idle"
        st.session_state.batch_results = None
    st.caption("Restart resets the simulation to tick 0 with default settings.")
    if "seed" not in st.session_state:
        st.session_state.seed = 1
    st.number_input(
        "Random seed",
        min_value=1,
        max_value=100000,
        key="seed",
    )

    run_ticks = st.slider("Ticks to run", min_value=1, max_value=520, value=26)
    c3, c4 = st.columns(2)
    run_one = c3.button("Step 1 tick")
    run_many = c4.button("Run N ticks")
    progress_label = st.session_state.get("run_progress_label", "Idle")
    progress_value = float(st.session_state.get("run_progress", 0.0))
    progress_bar = st.progress(progress_value, text=progress_label)
    if run_one:
        start_ts = time.time()
        engine.step(1)
        elapsed = time.time() - start_ts
        st.session_state.run_progress = 1.0
        st.session_state.run_progress_label = f"Run progress: 100% ({_fmt_duration(elapsed)})"
        progress_bar.progress(1.0, text=st.session_state.run_progress_label)
    if run_many:
        total = int(run_ticks)
        start_ts = time.time()
        for idx in range(total):
            engine.step(1)
            progress = (idx + 1) / total
            progress_bar.progress(progress, text=f"Run progress: {progress:.0%}")
        elapsed = time.time() - start_ts
        st.session_state.run_progress = 1.0
        st.session_state.run_progress_label = f"Run progress: 100% ({_fmt_duration(elapsed)})"
        progress_bar.progress(1.0, text=st.session_state.run_progress_label)
    st.caption(f"Current tick: {engine.tick}")

    st.subheader("Users")
    engine.cfg.deposit_prob = st.slider("Deposit probability", 0.0, 1.0, float(engine.cfg.deposit_prob), step=0.05)
    engine.cfg.withdraw_prob = st.slider("Withdraw probability", 0.0, 1.0, float(engine.cfg.withdraw_prob), step=0.05)
    engine.cfg.deposit_mean_btc = st.number_input(
        "Mean deposit (BTC)", min_value=0.0, value=float(engine.cfg.deposit_mean_btc), step=0.01, format="%.4f",
    )
    engine.cfg.user_growth_per_tick = st.number_input(
        "User growth rate (per tick)",
        min_value=0.0,
        value=float(engine.cfg.user_growth_per_tick),
        step=0.01,
        help="Adds new users each tick by this share of current users (0.05 = 5%).",
    )

    st.subheader("Operator")
    op = engine.operator
    c1, c2, c3 = st.columns(3)
    if c1.button("Harvest"):
        _run_action("Harvest", lambda: engine.vault.harvest_cross_chain_yield(op).to_dict())
    if c2.button("Rebalance"):
        _run_action("Rebalance", lambda: {
            "divested": engine.vault.rebalance(op).divested,
        })
    if c3.button("Loop once"):
        _run_action("Loop", lambda: engine.vault.loop_cross_chain(op))

    st.subheader("Manual deposit / withdraw")
    who = st.text_input("Account", value="manual_user")
    amount_btc = st.number_input("Deposit (BTC)", min_value=0.0, value=0.0002, step=0.0001, format="%.8f")
    if st.button("Deposit"):
        _run_action("Deposit", lambda: {"shares": engine.vault.deposit(parse_units(amount_btc, ASSET_DECIMALS), who)})
    held = engine.vault.balance_of(who)
    st.caption(f"{who} holds {held:,} shares (~{_fmt(_btc(engine.vault.preview_redeem(held)), 8)} BTC)")
    redeem_share = st.slider("Redeem share of holdings", 0.0, 1.0, 1.0, step=0.05)
    if st.button("Withdraw"):
        _run_action("Withdraw", lambda: {"assets": engine.vault.withdraw(max(1, int(held * redeem_share)), who)})

    st.subheader("Batch Runs")
    st.caption("Sweep one parameter across multiple runs to compare outcomes.")
    runs_per_value = st.number_input(
        "Runs per value", min_value=1, max_value=50, value=3, step=1
    )
    ticks_per_run = st.number_input(
        "Ticks per run", min_value=1, max_value=1000, value=52, step=1
    )
    base_seed = st.number_input(
        "Base seed",
        min_value=1,
        max_value=100000,
        value=int(st.session_state.get("seed", 1)),
        step=1,
        key="batch_seed",
    )

    label_map = {label: (name, typ) for name, label, typ in BATCH_PARAM_SPECS}
    selected_label = st.selectbox("Parameter to sweep", list(label_map.keys()))
    param_name, param_type = label_map[selected_label]
    values_text = st.text_input(
        "Values (comma-separated)",
        value=str(getattr(engine.cfg, param_name)),
        key="batch_values",
    )

    if st.button("Run batch"):
        values = _parse_sweep_values(values_text, param_type)
        if not values:
            st.warning("Enter at least one numeric value.")
        else:
            results = []
            with st.spinner("Running batch simulations..."):
                for value in values:
                    for idx in range(int(runs_per_value)):
                        cfg = dataclasses.replace(engine.cfg, **{param_name: value})
                        seed = int(base_seed) + idx
                        sim = SimulationEngine(cfg=cfg, seed=seed)
                        sim.step(int(ticks_per_run))
                        vault_df = sim.metrics.vault_df()
                        latest = vault_df.iloc[-1].to_dict() if not vault_df.empty else {}
                        results.append({
                            "param": param_name,
                            "value": value,
                            "run": idx + 1,
                            "seed": seed,
                            "tick": sim.tick,
                            "total_assets_btc": latest.get("total_assets_btc", 0.0),
                            "share_price": latest.get("share_price", 1.0),
                            "health_factor": latest.get("health_factor", float("nan")),
                            "failed_withdrawals": int(vault_df["failed_withdrawals_tick"].sum())
                            if not vault_df.empty else 0,
                            "invariant_violations": len(sim.invariant_violations),
                        })
            st.session_state.batch_results = results

tab_vault, tab_strategies, tab_crosschain, tab_events, tab_receipts = st.tabs(
    ["Vault Overview", "Strategies", "Cross-Chain", "Events", "Receipts"]
)

vault_df = engine.metrics.vault_df()
strategy_df = engine.metrics.strategy_df()

with tab_vault:
    st.subheader("Vault KPIs")
    if vault_df.empty:
        st.info("No metrics yet. Run ticks.")
    else:
        latest = vault_df.iloc[-1].to_dict()
        kpis = [
            ("Total assets (BTC)", _fmt(latest["total_assets_btc"], 6)),
            ("Share price", _fmt(latest["share_price"], 6)),
            ("Reserve (BTC)", _fmt(latest["reserve_btc"], 6)),
            ("Reserve ratio", _fmt(latest["reserve_ratio"], 4)),
            ("Holders", _fmt(latest["holders"], 0)),
            ("BTC price", _fmt(latest["btc_price_usd"])),
            ("Price source", latest["price_source"]),
            ("Invariant violations", _fmt(latest["invariant_violations"], 0)),
        ]
        _render_kpi_grid(kpis, columns=4)

        st.subheader("Total assets vs reserve (BTC)")
        st.line_chart(vault_df, x="tick", y=["total_assets_btc", "reserve_btc"])
        st.subheader("Share price")
        st.line_chart(vault_df, x="tick", y=["share_price"])
        st.subheader("User flow (per tick)")
        st.line_chart(vault_df, x="tick", y=["deposits_tick", "withdrawals_tick", "failed_withdrawals_tick"])

    if engine.invariant_violations:
        st.error("\n".join(engine.invariant_violations[-20:]))

    if st.session_state.get("batch_results"):
        st.subheader("Batch Results")
        st.dataframe(pd.DataFrame(st.session_state.batch_results), use_container_width=True)

with tab_strategies:
    st.subheader("Strategy registry")
    _, entries = engine.vault.get_strategies()
    reg = pd.DataFrame([
        {**e.to_dict(), "assets_btc": _btc(e.adapter.total_assets())} for e in entries
    ])
    st.dataframe(reg, use_container_width=True)
    st.caption(f"Registry version {engine.vault.registry.version}, reserve {engine.vault.registry.reserve_bps} bps")

    alloc = engine.metrics.allocation_df()
    if not alloc.empty:
        st.subheader("Assets per strategy (base units)")
        st.area_chart(alloc)

    st.subheader("Adjust allocation")
    sel = st.selectbox("Strategy", [e.strategy_id for e in entries],
                       format_func=lambda sid: engine.vault.registry.get(sid).name)
    cur = engine.vault.registry.get(sel)
    new_bps = st.number_input("allocation_bps", min_value=0, max_value=10_000, value=int(cur.allocation_bps), step=100)
    enabled = st.checkbox("enabled", value=cur.enabled)
    if st.button("Apply"):
        _run_action("set_strategy", lambda: engine.vault.set_strategy(op, sel, int(new_bps), enabled).to_dict())

with tab_crosschain:
    st.subheader("Cross-chain position")
    pos = engine.deployment.leverage.position
    kpis = [
        ("Health factor", _fmt(engine.vault.get_health_factor(), 4)),
        ("Leverage ratio", _fmt(engine.vault.get_leverage_ratio(), 4)),
        ("Collateral (BTC)", _fmt(_btc(pos.collateral), 8)),
        ("Debt (USD)", _fmt(pos.debt_usd / 10 ** 12)),
        ("Bridged (USDC)", _fmt(pos.bridged / 10 ** 6)),
        ("Harvested (USDC)", _fmt(pos.harvested_total / 10 ** 6)),
        ("Repaid (USDC)", _fmt(pos.repaid_total / 10 ** 6)),
        ("Loops executed", _fmt(pos.loops_executed, 0)),
    ]
    _render_kpi_grid(kpis, columns=4)
    if not vault_df.empty:
        st.subheader("Debt vs bridged vs yield balance")
        st.line_chart(vault_df, x="tick", y=["debt_usd", "bridged_usdc", "yield_balance_usdc"])
        st.subheader("Health factor")
        st.line_chart(vault_df, x="tick", y=["health_factor"])

with tab_events:
    st.subheader("Event Log (latest 300)")
    tail = engine.log.tail(300)
    if not tail:
        st.info("No events yet.")
    else:
        df = pd.DataFrame([e.to_dict() for e in tail]).sort_values("seq", ascending=False)
        df["meta"] = df["meta"].apply(_format_event_meta)
        st.dataframe(df, use_container_width=True)

with tab_receipts:
    st.subheader("Vault receipts (latest 300)")
    recs = engine.vault.receipts.tail(300)
    if not recs:
        st.info("No receipts yet.")
    else:
        df = pd.DataFrame([r.to_dict() for r in recs]).sort_values("seq", ascending=False)
        df["outcomes"] = df["outcomes"].apply(_format_event_meta)
        st.dataframe(df, use_container_width=True)
