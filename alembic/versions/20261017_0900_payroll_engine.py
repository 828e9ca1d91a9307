"""Payroll engine schema

Revision ID: 20261017_0900_payroll_engine
Revises:
Create Date: 2026-10-17 09:00:00.000000

This migration creates the payroll tables:
- employees, audit_logs
- salary_structures, allowances, deductions and their bindings
- employee_salaries: time-ranged structure assignment
- loan_types, loan_type_salary_structures: loan products and eligibility
- loan_applications, loan_repayments
- payruns, payrun_items, payrun_item_details

Partial unique indexes enforce one open assignment per employee, one open
binding per (owner, component) and one payrun per period/type/allowance.
"""

from alembic import op
import sqlalchemy as sa

# revision identifiers
revision = '20261017_0900_payroll_engine'
down_revision = None
branch_labels = None
depends_on = None


employee_role = sa.Enum('ADMIN', 'USER', name='employeerole')
employee_status = sa.Enum('ACTIVE', 'INACTIVE', name='employeestatus')
audit_action = sa.Enum(
    'CREATE', 'UPDATE', 'DELETE', 'ASSIGN', 'UNASSIGN', 'GENERATE',
    'APPROVE', 'COMPLETE', 'ROLLBACK', 'DISBURSE', 'CANCEL', 'REJECT', 'REPAY',
    name='auditaction',
)
allowance_kind = sa.Enum(
    'ONE_TIME', 'MONTHLY', 'QUARTERLY', 'BI_ANNUAL', 'ANNUAL', 'CUSTOM',
    name='allowancekind',
)
deduction_kind = sa.Enum(
    'RECURRING', 'ONE_TIME', 'STATUTORY', 'LOAN', 'ADVANCE',
    name='deductionkind',
)
loan_amount_type = sa.Enum('FIXED', 'PERCENTAGE', name='loanamounttype')
loan_status = sa.Enum(
    'PENDING', 'APPROVED', 'REJECTED', 'ACTIVE', 'COMPLETED', 'CANCELLED',
    name='loanstatus',
)
repayment_status = sa.Enum('PENDING', 'PARTIAL', 'OVERDUE', 'PAID', name='repaymentstatus')
payrun_type = sa.Enum('SALARY', 'ALLOWANCE', name='payruntype')
payrun_status = sa.Enum('DRAFT', 'PENDING', 'APPROVED', 'PAID', name='payrunstatus')
payrun_detail_type = sa.Enum(
    'BASE_SALARY', 'ALLOWANCE', 'TAX', 'DEDUCTION', 'LOAN',
    name='payrundetailtype',
)


def _money(name, nullable=False):
    return sa.Column(name, sa.Numeric(precision=15, scale=2), nullable=nullable)


def _percent(name):
    return sa.Column(name, sa.Numeric(precision=5, scale=2), nullable=True)


def _base_columns():
    return [
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
    ]


def _audit_columns():
    return [
        sa.Column('created_by_id', sa.Uuid(), nullable=True),
        sa.Column('updated_by_id', sa.Uuid(), nullable=True),
    ]


def _effective_columns():
    return [
        sa.Column('effective_from', sa.DateTime(timezone=True), nullable=False),
        sa.Column('effective_to', sa.DateTime(timezone=True), nullable=True),
    ]


def upgrade() -> None:
    """Create payroll tables."""

    # ===========================================
    # EMPLOYEES AND AUDIT
    # ===========================================

    op.create_table(
        'employees',
        *_base_columns(),
        sa.Column('staff_number', sa.String(50), nullable=False),
        sa.Column('first_name', sa.String(100), nullable=False),
        sa.Column('last_name', sa.String(100), nullable=False),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('department', sa.String(100), nullable=True),
        sa.Column('hire_date', sa.Date(), nullable=True),
        sa.Column('role', employee_role, nullable=False),
        sa.Column('status', employee_status, nullable=False),
        sa.PrimaryKeyConstraint('id', name='pk_employees'),
        sa.UniqueConstraint('staff_number', name='uq_employees_staff_number'),
        sa.UniqueConstraint('email', name='uq_employees_email'),
    )
    op.create_index('ix_employees_status', 'employees', ['status'])

    op.create_table(
        'audit_logs',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('actor_id', sa.Uuid(), nullable=True),
        sa.Column('action', audit_action, nullable=False),
        sa.Column('target_entity_type', sa.String(100), nullable=False),
        sa.Column('target_entity_id', sa.String(100), nullable=False),
        sa.Column('old_values', sa.JSON(), nullable=True),
        sa.Column('new_values', sa.JSON(), nullable=True),
        sa.Column('changes', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint('id', name='pk_audit_logs'),
    )
    for column in ('actor_id', 'action', 'target_entity_type', 'target_entity_id', 'created_at'):
        op.create_index(f'ix_audit_logs_{column}', 'audit_logs', [column])

    # ===========================================
    # STRUCTURES AND RATE CATALOGS
    # ===========================================

    op.create_table(
        'salary_structures',
        *_base_columns(),
        *_audit_columns(),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        _money('base_salary'),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('employee_count', sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint('id', name='pk_salary_structures'),
    )
    op.create_index(
        'uq_salary_structures_lower_name', 'salary_structures',
        [sa.text('lower(name)')], unique=True,
    )

    op.create_table(
        'allowances',
        *_base_columns(),
        *_audit_columns(),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('kind', allowance_kind, nullable=False),
        _percent('percentage'),
        _money('amount', nullable=True),
        sa.Column('is_taxable', sa.Boolean(), nullable=False),
        _percent('tax_percentage'),
        sa.PrimaryKeyConstraint('id', name='pk_allowances'),
    )
    op.create_index('uq_allowances_lower_name', 'allowances', [sa.text('lower(name)')], unique=True)

    op.create_table(
        'deductions',
        *_base_columns(),
        *_audit_columns(),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('kind', deduction_kind, nullable=False),
        _percent('percentage'),
        _money('amount', nullable=True),
        sa.PrimaryKeyConstraint('id', name='pk_deductions'),
    )
    op.create_index('uq_deductions_lower_name', 'deductions', [sa.text('lower(name)')], unique=True)

    # ===========================================
    # ASSIGNMENTS AND BINDINGS
    # ===========================================

    op.create_table(
        'employee_salaries',
        *_base_columns(),
        sa.Column('employee_id', sa.Uuid(), nullable=False),
        sa.Column('salary_structure_id', sa.Uuid(), nullable=False),
        *_effective_columns(),
        sa.PrimaryKeyConstraint('id', name='pk_employee_salaries'),
        sa.ForeignKeyConstraint(
            ['employee_id'], ['employees.id'], ondelete='CASCADE',
            name='fk_employee_salaries_employee_id_employees',
        ),
        sa.ForeignKeyConstraint(
            ['salary_structure_id'], ['salary_structures.id'], ondelete='RESTRICT',
            name='fk_employee_salaries_salary_structure_id_salary_structures',
        ),
    )
    op.create_index('ix_employee_salaries_employee_id', 'employee_salaries', ['employee_id'])
    op.create_index('ix_employee_salaries_salary_structure_id', 'employee_salaries', ['salary_structure_id'])
    op.create_index(
        'uq_employee_salaries_active_employee', 'employee_salaries', ['employee_id'],
        unique=True, postgresql_where=sa.text('effective_to IS NULL'),
    )

    for table, owner_table, owner, component_table, component in (
        ('salary_allowances', 'salary_structures', 'salary_structure_id', 'allowances', 'allowance_id'),
        ('salary_deductions', 'salary_structures', 'salary_structure_id', 'deductions', 'deduction_id'),
        ('employee_allowances', 'employees', 'employee_id', 'allowances', 'allowance_id'),
    ):
        op.create_table(
            table,
            *_base_columns(),
            sa.Column(owner, sa.Uuid(), nullable=False),
            sa.Column(component, sa.Uuid(), nullable=False),
            *_effective_columns(),
            sa.PrimaryKeyConstraint('id', name=f'pk_{table}'),
            sa.ForeignKeyConstraint(
                [owner], [f'{owner_table}.id'], ondelete='CASCADE',
                name=f'fk_{table}_{owner}_{owner_table}',
            ),
            sa.ForeignKeyConstraint(
                [component], [f'{component_table}.id'], ondelete='RESTRICT',
                name=f'fk_{table}_{component}_{component_table}',
            ),
        )
        op.create_index(f'ix_{table}_{owner}', table, [owner])
        op.create_index(f'ix_{table}_{component}', table, [component])
        op.create_index(
            f'uq_{table}_active_binding', table, [owner, component],
            unique=True, postgresql_where=sa.text('effective_to IS NULL'),
        )

    # ===========================================
    # LOANS
    # ===========================================

    op.create_table(
        'loan_types',
        *_base_columns(),
        *_audit_columns(),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('amount_type', loan_amount_type, nullable=False),
        _money('fixed_amount', nullable=True),
        _percent('max_percentage'),
        sa.Column('tenure_months', sa.Integer(), nullable=False),
        sa.Column('interest_rate', sa.Numeric(precision=5, scale=2), nullable=False),
        sa.Column('min_service_months', sa.Integer(), nullable=False),
        sa.Column('max_active_loans', sa.Integer(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.PrimaryKeyConstraint('id', name='pk_loan_types'),
    )
    op.create_index('uq_loan_types_lower_name', 'loan_types', [sa.text('lower(name)')], unique=True)

    op.create_table(
        'loan_type_salary_structures',
        *_base_columns(),
        sa.Column('loan_type_id', sa.Uuid(), nullable=False),
        sa.Column('salary_structure_id', sa.Uuid(), nullable=False),
        sa.PrimaryKeyConstraint('id', name='pk_loan_type_salary_structures'),
        sa.UniqueConstraint('loan_type_id', 'salary_structure_id', name='uq_loan_type_salary_structure'),
        sa.ForeignKeyConstraint(
            ['loan_type_id'], ['loan_types.id'], ondelete='CASCADE',
            name='fk_loan_type_salary_structures_loan_type_id_loan_types',
        ),
        sa.ForeignKeyConstraint(
            ['salary_structure_id'], ['salary_structures.id'], ondelete='CASCADE',
            name='fk_loan_type_salary_structures_salary_structure_id_salary_structures',
        ),
    )
    op.create_index(
        'ix_loan_type_salary_structures_loan_type_id', 'loan_type_salary_structures', ['loan_type_id'],
    )
    op.create_index(
        'ix_loan_type_salary_structures_salary_structure_id', 'loan_type_salary_structures',
        ['salary_structure_id'],
    )

    op.create_table(
        'loan_applications',
        *_base_columns(),
        *_audit_columns(),
        sa.Column('reference_number', sa.String(50), nullable=False),
        sa.Column('employee_id', sa.Uuid(), nullable=False),
        sa.Column('loan_type_id', sa.Uuid(), nullable=True),
        sa.Column('reason', sa.Text(), nullable=True),
        _money('principal_amount'),
        _money('approved_amount', nullable=True),
        sa.Column('interest_rate', sa.Numeric(precision=5, scale=2), nullable=False),
        sa.Column('tenure_months', sa.Integer(), nullable=False),
        _money('total_amount', nullable=True),
        _money('monthly_deduction', nullable=True),
        _money('total_repaid'),
        _money('remaining_balance'),
        sa.Column('status', loan_status, nullable=False),
        sa.Column('reviewed_by_id', sa.Uuid(), nullable=True),
        sa.Column('reviewed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('review_remarks', sa.Text(), nullable=True),
        sa.Column('disbursed_by_id', sa.Uuid(), nullable=True),
        sa.Column('disbursed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id', name='pk_loan_applications'),
        sa.UniqueConstraint('reference_number', name='uq_loan_applications_reference_number'),
        sa.ForeignKeyConstraint(
            ['employee_id'], ['employees.id'], ondelete='CASCADE',
            name='fk_loan_applications_employee_id_employees',
        ),
        sa.ForeignKeyConstraint(
            ['loan_type_id'], ['loan_types.id'], ondelete='RESTRICT',
            name='fk_loan_applications_loan_type_id_loan_types',
        ),
        sa.ForeignKeyConstraint(
            ['reviewed_by_id'], ['employees.id'], ondelete='SET NULL',
            name='fk_loan_applications_reviewed_by_id_employees',
        ),
        sa.ForeignKeyConstraint(
            ['disbursed_by_id'], ['employees.id'], ondelete='SET NULL',
            name='fk_loan_applications_disbursed_by_id_employees',
        ),
    )
    op.create_index('ix_loan_applications_employee_id', 'loan_applications', ['employee_id'])
    op.create_index('ix_loan_applications_loan_type_id', 'loan_applications', ['loan_type_id'])
    op.create_index('ix_loan_applications_status', 'loan_applications', ['status'])

    op.create_table(
        'employee_deductions',
        *_base_columns(),
        *_audit_columns(),
        sa.Column('employee_id', sa.Uuid(), nullable=False),
        sa.Column('deduction_id', sa.Uuid(), nullable=True),
        sa.Column('salary_structure_id', sa.Uuid(), nullable=True),
        sa.Column('loan_application_id', sa.Uuid(), nullable=True),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('kind', deduction_kind, nullable=False),
        _percent('percentage'),
        _money('amount', nullable=True),
        _money('original_amount', nullable=True),
        _money('remaining_amount', nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        *_effective_columns(),
        sa.PrimaryKeyConstraint('id', name='pk_employee_deductions'),
        sa.ForeignKeyConstraint(
            ['employee_id'], ['employees.id'], ondelete='CASCADE',
            name='fk_employee_deductions_employee_id_employees',
        ),
        sa.ForeignKeyConstraint(
            ['deduction_id'], ['deductions.id'], ondelete='SET NULL',
            name='fk_employee_deductions_deduction_id_deductions',
        ),
        sa.ForeignKeyConstraint(
            ['salary_structure_id'], ['salary_structures.id'], ondelete='SET NULL',
            name='fk_employee_deductions_salary_structure_id_salary_structures',
        ),
        sa.ForeignKeyConstraint(
            ['loan_application_id'], ['loan_applications.id'], ondelete='SET NULL',
            name='fk_employee_deductions_loan_application_id_loan_applications',
        ),
    )
    op.create_index('ix_employee_deductions_employee_id', 'employee_deductions', ['employee_id'])
    op.create_index('ix_employee_deductions_loan_application_id', 'employee_deductions', ['loan_application_id'])

    # ===========================================
    # PAYRUNS
    # ===========================================

    op.create_table(
        'payruns',
        *_base_columns(),
        sa.Column('name', sa.String(150), nullable=False),
        sa.Column('payrun_type', payrun_type, nullable=False),
        sa.Column('allowance_id', sa.Uuid(), nullable=True),
        sa.Column('year', sa.Integer(), nullable=False),
        sa.Column('month', sa.Integer(), nullable=False),
        sa.Column('day', sa.Integer(), nullable=False),
        sa.Column('total_employees', sa.Integer(), nullable=False),
        _money('total_gross_pay'),
        _money('total_deductions'),
        _money('total_net_pay'),
        sa.Column('status', payrun_status, nullable=False),
        sa.Column('generated_by_id', sa.Uuid(), nullable=True),
        sa.Column('approved_by_id', sa.Uuid(), nullable=True),
        sa.Column('approved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_by_id', sa.Uuid(), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id', name='pk_payruns'),
        sa.ForeignKeyConstraint(
            ['allowance_id'], ['allowances.id'], ondelete='RESTRICT',
            name='fk_payruns_allowance_id_allowances',
        ),
        sa.ForeignKeyConstraint(
            ['generated_by_id'], ['employees.id'], ondelete='SET NULL',
            name='fk_payruns_generated_by_id_employees',
        ),
        sa.ForeignKeyConstraint(
            ['approved_by_id'], ['employees.id'], ondelete='SET NULL',
            name='fk_payruns_approved_by_id_employees',
        ),
        sa.ForeignKeyConstraint(
            ['completed_by_id'], ['employees.id'], ondelete='SET NULL',
            name='fk_payruns_completed_by_id_employees',
        ),
    )
    op.create_index('ix_payruns_status', 'payruns', ['status'])
    op.create_index(
        'uq_payruns_salary_period', 'payruns', ['year', 'month', 'day', 'payrun_type'],
        unique=True, postgresql_where=sa.text('allowance_id IS NULL'),
    )
    op.create_index(
        'uq_payruns_allowance_period', 'payruns', ['year', 'month', 'day', 'payrun_type', 'allowance_id'],
        unique=True, postgresql_where=sa.text('allowance_id IS NOT NULL'),
    )

    op.create_table(
        'payrun_items',
        *_base_columns(),
        sa.Column('payrun_id', sa.Uuid(), nullable=False),
        sa.Column('employee_id', sa.Uuid(), nullable=False),
        _money('base_salary'),
        _money('total_allowances'),
        _money('total_deductions'),
        _money('total_taxes'),
        _money('gross_pay'),
        _money('taxable_income'),
        _money('net_pay'),
        sa.Column('status', payrun_status, nullable=False),
        sa.PrimaryKeyConstraint('id', name='pk_payrun_items'),
        sa.UniqueConstraint('payrun_id', 'employee_id', name='uq_payrun_item_employee'),
        sa.ForeignKeyConstraint(
            ['payrun_id'], ['payruns.id'], ondelete='CASCADE',
            name='fk_payrun_items_payrun_id_payruns',
        ),
        sa.ForeignKeyConstraint(
            ['employee_id'], ['employees.id'], ondelete='RESTRICT',
            name='fk_payrun_items_employee_id_employees',
        ),
    )
    op.create_index('ix_payrun_items_payrun_id', 'payrun_items', ['payrun_id'])
    op.create_index('ix_payrun_items_employee_id', 'payrun_items', ['employee_id'])

    op.create_table(
        'payrun_item_details',
        *_base_columns(),
        sa.Column('payrun_item_id', sa.Uuid(), nullable=False),
        sa.Column('detail_type', payrun_detail_type, nullable=False),
        sa.Column('description', sa.String(255), nullable=False),
        _money('amount'),
        sa.Column('allowance_id', sa.Uuid(), nullable=True),
        sa.Column('deduction_id', sa.Uuid(), nullable=True),
        sa.Column('employee_deduction_id', sa.Uuid(), nullable=True),
        sa.Column('loan_application_id', sa.Uuid(), nullable=True),
        _money('original_amount', nullable=True),
        _money('remaining_amount', nullable=True),
        sa.PrimaryKeyConstraint('id', name='pk_payrun_item_details'),
        sa.ForeignKeyConstraint(
            ['payrun_item_id'], ['payrun_items.id'], ondelete='CASCADE',
            name='fk_payrun_item_details_payrun_item_id_payrun_items',
        ),
        sa.ForeignKeyConstraint(
            ['loan_application_id'], ['loan_applications.id'], ondelete='RESTRICT',
            name='fk_payrun_item_details_loan_application_id_loan_applications',
        ),
    )
    op.create_index('ix_payrun_item_details_payrun_item_id', 'payrun_item_details', ['payrun_item_id'])
    op.create_index('ix_payrun_item_details_loan_application_id', 'payrun_item_details', ['loan_application_id'])

    op.create_table(
        'loan_repayments',
        *_base_columns(),
        sa.Column('loan_application_id', sa.Uuid(), nullable=False),
        sa.Column('installment_number', sa.Integer(), nullable=False),
        sa.Column('due_date', sa.Date(), nullable=False),
        _money('expected_amount'),
        _money('paid_amount', nullable=True),
        _money('balance_after', nullable=True),
        sa.Column('status', repayment_status, nullable=False),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('payrun_id', sa.Uuid(), nullable=True),
        sa.Column('payrun_item_id', sa.Uuid(), nullable=True),
        sa.PrimaryKeyConstraint('id', name='pk_loan_repayments'),
        sa.UniqueConstraint(
            'loan_application_id', 'installment_number', name='uq_loan_repayment_installment',
        ),
        sa.ForeignKeyConstraint(
            ['loan_application_id'], ['loan_applications.id'], ondelete='CASCADE',
            name='fk_loan_repayments_loan_application_id_loan_applications',
        ),
        sa.ForeignKeyConstraint(
            ['payrun_id'], ['payruns.id'], ondelete='SET NULL',
            name='fk_loan_repayments_payrun_id_payruns',
        ),
        sa.ForeignKeyConstraint(
            ['payrun_item_id'], ['payrun_items.id'], ondelete='SET NULL',
            name='fk_loan_repayments_payrun_item_id_payrun_items',
        ),
    )
    op.create_index('ix_loan_repayments_loan_application_id', 'loan_repayments', ['loan_application_id'])


def downgrade() -> None:
    """Drop payroll tables."""
    for table in (
        'loan_repayments',
        'payrun_item_details',
        'payrun_items',
        'payruns',
        'employee_deductions',
        'loan_applications',
        'loan_type_salary_structures',
        'loan_types',
        'employee_allowances',
        'salary_deductions',
        'salary_allowances',
        'employee_salaries',
        'deductions',
        'allowances',
        'salary_structures',
        'audit_logs',
        'employees',
    ):
        op.drop_table(table)

    bind = op.get_bind()
    for enum in (
        payrun_detail_type, payrun_status, payrun_type, repayment_status, loan_status, loan_amount_type,
        deduction_kind, allowance_kind, audit_action, employee_status, employee_role,
    ):
        enum.drop(bind, checkfirst=True)
