"""
002 — Seed baseline Indian rule catalog

MCA, GST, Income Tax / TDS, PF / ESI / PT and FEMA obligations most
private companies, LLPs and proprietorships face. Each rule is one catalog
write, so the baseline ends at catalog version len(RULES).

Known simplifications of the closed due-date strategies:
  - AOC-4 / MGT-7 assume the AGM on 30 September (statutory latest date)
  - Form 24Q / 26Q Q4 is due 31 May, modelled as month-end after the quarter
  - Professional Tax dates vary by state; 15th of next month is used

Revision ID: 002
Create Date: 2026-10-19
"""
from datetime import date

from alembic import op
import sqlalchemy as sa

revision = "002"
down_revision = "001"
branch_labels = None
depends_on = None

COMPANIES = ["pvt_ltd", "public_limited"]
ALL_BUSINESS = ["pvt_ltd", "llp", "opc", "proprietorship", "partnership"]
EMPLOYERS = ["pvt_ltd", "llp", "opc", "partnership", "proprietorship"]
PT_STATES = [
    "Maharashtra", "Karnataka", "West Bengal", "Tamil Nadu", "Gujarat",
    "Andhra Pradesh", "Telangana", "Madhya Pradesh", "Kerala", "Odisha",
]


def _fixed(month: int, day: int) -> dict:
    return {"strategy": "FIXED_CALENDAR_DATE", "month": month, "day": day}


def _day_after(day: int, months_after: int = 1) -> dict:
    return {"strategy": "DAY_OF_MONTH_AFTER_PERIOD_END", "day": day, "months_after": months_after}


def _since_incorporation(days: int) -> dict:
    return {"strategy": "DAYS_AFTER_INCORPORATION", "offset_days": days}


RULES = [
    # ── Corporate / MCA ──
    dict(
        rule_id="MCA_INC20A_COMMENCEMENT", rule_name="INC-20A: Declaration for Commencement of Business",
        domain="CORPORATE", applicable_entity_types=COMPANIES + ["opc"],
        frequency="ONE_TIME", due_date_logic=_since_incorporation(180),
        penalty_per_day=1000, max_penalty=100000, criticality_score=8, amber_threshold_days=30,
        required_documents=["bank_statement_share_capital"],
        effective_from=date(2019, 11, 2),
        description="One-time declaration that subscribers have paid for their shares",
        help_text="Within 180 days of incorporation. Company may be struck off if not filed.",
    ),
    dict(
        rule_id="MCA_AOC4_ANNUAL", rule_name="AOC-4: Annual Financial Statements Filing",
        domain="CORPORATE", applicable_entity_types=COMPANIES,
        frequency="ANNUAL", due_date_logic=_fixed(10, 29),
        penalty_per_day=100, max_penalty=500000, criticality_score=10, amber_threshold_days=15,
        required_documents=["audited_financials", "board_resolution", "directors_report", "auditors_report"],
        description="Annual filing of financial statements with ROC",
        help_text="Within 30 days of the AGM. AGM must be held within 6 months from FY end.",
    ),
    dict(
        rule_id="MCA_MGT7_ANNUAL", rule_name="MGT-7: Annual Return Filing",
        domain="CORPORATE", applicable_entity_types=COMPANIES,
        frequency="ANNUAL", due_date_logic=_fixed(11, 28),
        penalty_per_day=100, max_penalty=500000, criticality_score=10, amber_threshold_days=15,
        required_documents=["aoc4_acknowledgement", "shareholding_pattern", "director_details"],
        depends_on_rules=["MCA_AOC4_ANNUAL"],
        description="Annual return of the company with ROC",
        help_text="Cannot be filed before AOC-4. Contains details of members, directors and shareholding.",
    ),
    dict(
        rule_id="MCA_DIR3KYC_ANNUAL", rule_name="DIR-3 KYC: Director KYC Verification",
        domain="CORPORATE", applicable_entity_types=["pvt_ltd", "llp", "opc", "public_limited"],
        frequency="ANNUAL", due_date_logic=_fixed(10, 15),
        penalty_per_day=0, max_penalty=5000, criticality_score=10, amber_threshold_days=15,
        required_documents=["director_pan", "director_aadhaar", "address_proof", "photo"],
        description="Mandatory annual KYC for all directors",
        help_text="DIN is deactivated if not filed by the due date.",
    ),

    # ── GST ──
    dict(
        rule_id="GST_GSTR1_MONTHLY", rule_name="GSTR-1: Monthly Outward Supplies",
        domain="TAX_GST", applicable_entity_types=ALL_BUSINESS, turnover_min=50000000, requires_gst=True,
        frequency="MONTHLY", due_date_logic=_day_after(11),
        penalty_per_day=0, criticality_score=8, amber_threshold_days=5,
        required_documents=["sales_invoices", "b2b_details", "export_details"],
        description="Monthly details of outward supplies",
        help_text="Must be filed before GSTR-3B. Auto-populates ITC in GSTR-3B.",
    ),
    dict(
        rule_id="GST_GSTR3B_MONTHLY", rule_name="GSTR-3B: Monthly Summary Return",
        domain="TAX_GST", applicable_entity_types=ALL_BUSINESS, turnover_min=50000000, requires_gst=True,
        frequency="MONTHLY", due_date_logic=_day_after(20),
        penalty_per_day=50, max_penalty=5000, criticality_score=10, amber_threshold_days=5,
        required_documents=["sales_register", "purchase_register", "bank_statements"],
        depends_on_rules=["GST_GSTR1_MONTHLY"],
        description="Monthly summary GST return with tax payment",
        help_text="Late fee ₹50/day (₹20/day for Nil). Interest @18% p.a. on unpaid tax.",
    ),
    dict(
        rule_id="GST_GSTR3B_QUARTERLY", rule_name="GSTR-3B: Quarterly Return (QRMP)",
        domain="TAX_GST", applicable_entity_types=ALL_BUSINESS, turnover_max=49999999.99, requires_gst=True,
        frequency="QUARTERLY", due_date_logic=_day_after(22),
        penalty_per_day=50, max_penalty=5000, criticality_score=9, amber_threshold_days=5,
        description="Quarterly GST return under the QRMP scheme",
        help_text="For taxpayers with turnover below ₹5 Cr. Monthly PMT-06 still required.",
    ),
    dict(
        rule_id="GST_GSTR9_ANNUAL", rule_name="GSTR-9: Annual GST Return",
        domain="TAX_GST", applicable_entity_types=ALL_BUSINESS, turnover_min=20000000, requires_gst=True,
        frequency="ANNUAL", due_date_logic=_fixed(12, 31),
        penalty_per_day=200, max_penalty=50000, criticality_score=7, amber_threshold_days=30,
        required_documents=["gstr1_gstr3b_data", "annual_financials", "itc_reconciliation"],
        description="Annual consolidated GST return",
        help_text="Mandatory above ₹2 Cr turnover. Reconciles the monthly returns.",
    ),

    # ── Income tax / TDS ──
    dict(
        rule_id="IT_ITR_COMPANY_AUDIT", rule_name="ITR Filing: Company (Audit Cases)",
        domain="TAX_INCOME", applicable_entity_types=COMPANIES,
        frequency="ANNUAL", due_date_logic=_fixed(10, 31),
        penalty_per_day=0, max_penalty=5000, criticality_score=10, amber_threshold_days=30,
        required_documents=["audited_financials", "tax_audit_report", "form_3cd", "tax_computation"],
        description="Income Tax Return for companies requiring audit",
        help_text="Late fee ₹5,000. Interest @1% p.m. under Section 234A.",
    ),
    dict(
        rule_id="IT_ITR_INDIVIDUAL", rule_name="ITR Filing: Individual/Proprietorship",
        domain="TAX_INCOME", applicable_entity_types=["proprietorship"],
        frequency="ANNUAL", due_date_logic=_fixed(7, 31),
        penalty_per_day=0, max_penalty=5000, criticality_score=9, amber_threshold_days=30,
        required_documents=["form16", "bank_statements", "capital_gains", "interest_certificates"],
        description="ITR for individuals, HUFs and proprietorships",
        help_text="Late fee ₹1,000 (income below ₹5L) or ₹5,000. Belated return until 31 December.",
    ),
    dict(
        rule_id="IT_TDS_24Q_QUARTERLY", rule_name="Form 24Q: TDS on Salary",
        domain="TAX_INCOME", applicable_entity_types=EMPLOYERS, employee_count_min=1,
        frequency="QUARTERLY", due_date_logic=_day_after(31),
        penalty_per_day=200, max_penalty=100000, criticality_score=9, amber_threshold_days=7,
        required_documents=["salary_register", "tds_challans", "employee_pan"],
        description="Quarterly TDS return for salary payments",
        help_text="Late fee ₹200/day under 234E. Penalty ₹10K-₹1L under 271H.",
    ),
    dict(
        rule_id="IT_TDS_26Q_QUARTERLY", rule_name="Form 26Q: TDS on Non-Salary",
        domain="TAX_INCOME", applicable_entity_types=EMPLOYERS,
        frequency="QUARTERLY", due_date_logic=_day_after(31),
        penalty_per_day=200, max_penalty=100000, criticality_score=8, amber_threshold_days=7,
        required_documents=["payment_register", "tds_certificates", "vendor_pan", "tds_challans"],
        description="Quarterly TDS return for interest, rent, professional fees, etc.",
        help_text="Same late fee as 24Q. TDS payment due by the 7th of next month.",
    ),

    # ── Labour ──
    dict(
        rule_id="LABOUR_PF_ECR_MONTHLY", rule_name="PF ECR: Monthly Provident Fund Return",
        domain="LABOUR", applicable_entity_types=EMPLOYERS, employee_count_min=20, requires_pf=True,
        frequency="MONTHLY", due_date_logic=_day_after(15),
        penalty_per_day=0, criticality_score=10, amber_threshold_days=5,
        required_documents=["payroll_register", "uan_list", "wage_details"],
        description="Monthly PF contribution filing and payment",
        help_text="Interest @12% p.a. Damages 5-25% on delay. No grace period.",
    ),
    dict(
        rule_id="LABOUR_ESI_MONTHLY", rule_name="ESI: Monthly Contribution Payment",
        domain="LABOUR", applicable_entity_types=EMPLOYERS, employee_count_min=10, requires_esi=True,
        frequency="MONTHLY", due_date_logic=_day_after(15),
        penalty_per_day=0, criticality_score=10, amber_threshold_days=5,
        required_documents=["payroll_register", "esi_employee_list", "wage_details"],
        description="Monthly ESI contribution payment",
        help_text="Interest @12% p.a. Prosecution risk: imprisonment and ₹5,000 fine.",
    ),
    dict(
        rule_id="LABOUR_PT_MONTHLY", rule_name="Professional Tax: Monthly Payment",
        domain="LABOUR", applicable_entity_types=EMPLOYERS, employee_count_min=1,
        state_specific=True, applicable_states=PT_STATES,
        frequency="MONTHLY", due_date_logic=_day_after(15),
        penalty_per_day=0, criticality_score=6, amber_threshold_days=5,
        description="State-level professional tax payment",
        help_text="Applicable in most states (Maharashtra, Karnataka, …).",
    ),

    # ── FEMA ──
    dict(
        rule_id="FEMA_FLA_ANNUAL", rule_name="FLA Return: Foreign Liabilities and Assets",
        domain="FEMA", applicable_entity_types=COMPANIES + ["llp"], requires_foreign_transactions=True,
        frequency="ANNUAL", due_date_logic=_fixed(7, 15),
        penalty_per_day=0, max_penalty=7500, criticality_score=7, amber_threshold_days=30,
        required_documents=["audited_financials", "fdi_odi_details"],
        description="Annual return to RBI for entities with FDI / ODI",
        help_text="Filed on the RBI FLAIR portal. Late filing is a FEMA contravention.",
    ),
]

rules_table = sa.table(
    "compliance_state_rules",
    sa.column("rule_id", sa.String),
    sa.column("rule_version", sa.Integer),
    sa.column("catalog_version", sa.Integer),
    sa.column("rule_name", sa.String),
    sa.column("domain", sa.String),
    sa.column("description", sa.Text),
    sa.column("help_text", sa.Text),
    sa.column("applicable_entity_types", sa.JSON),
    sa.column("turnover_min", sa.Numeric),
    sa.column("turnover_max", sa.Numeric),
    sa.column("employee_count_min", sa.Integer),
    sa.column("requires_gst", sa.Boolean),
    sa.column("requires_pf", sa.Boolean),
    sa.column("requires_esi", sa.Boolean),
    sa.column("requires_foreign_transactions", sa.Boolean),
    sa.column("state_specific", sa.Boolean),
    sa.column("applicable_states", sa.JSON),
    sa.column("frequency", sa.String),
    sa.column("due_date_logic", sa.JSON),
    sa.column("grace_days", sa.Integer),
    sa.column("filing_key", sa.String),
    sa.column("penalty_per_day", sa.Numeric),
    sa.column("max_penalty", sa.Numeric),
    sa.column("criticality_score", sa.Integer),
    sa.column("amber_threshold_days", sa.Integer),
    sa.column("red_triggers", sa.JSON),
    sa.column("required_documents", sa.JSON),
    sa.column("depends_on_rules", sa.JSON),
    sa.column("effective_from", sa.Date),
    sa.column("effective_until", sa.Date),
    sa.column("is_active", sa.Boolean),
    sa.column("created_by", sa.String),
)

DEFAULTS = dict(
    rule_version=1,
    description=None,
    help_text=None,
    applicable_entity_types=[],
    turnover_min=None,
    turnover_max=None,
    employee_count_min=None,
    requires_gst=False,
    requires_pf=False,
    requires_esi=False,
    requires_foreign_transactions=False,
    state_specific=False,
    applicable_states=[],
    grace_days=0,
    filing_key=None,
    max_penalty=None,
    red_triggers={"days_overdue": 0, "missing_documents": [], "dependencies_not_met": []},
    required_documents=[],
    depends_on_rules=[],
    effective_from=None,
    effective_until=None,
    is_active=True,
    created_by="system",
)


def upgrade() -> None:
    rows = [
        {**DEFAULTS, **rule, "catalog_version": catalog_version}
        for catalog_version, rule in enumerate(RULES, start=1)
    ]
    op.bulk_insert(rules_table, rows)


def downgrade() -> None:
    op.execute(
        rules_table.delete().where(
            rules_table.c.rule_id.in_([r["rule_id"] for r in RULES]),
            rules_table.c.rule_version == 1,
        )
    )
