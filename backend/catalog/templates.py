"""Built-in node and pipeline templates.

Each node template is one generation step of a software-delivery pipeline:
the role prompt it runs with and the model tier its work needs. Pipeline
templates are ready-made graphs over those steps.
"""

from models.schemas import ModelTier, NodeTemplate, PipelineTemplate

REQUIREMENTS_PROMPT = """You are a Requirements Analyst. Given a project description, produce structured requirements:
- User stories with acceptance criteria
- Non-functional requirements (performance, security, scalability)
- Prioritized feature list (MoSCoW)
- Edge cases and constraints

Respond with well-structured markdown."""

DB_SCHEMA_PROMPT = """You are a Database Architect. Design a complete database schema:
- Table definitions with columns, types, constraints
- Relationships (FK, junction tables)
- Indexes for query performance
- Migration SQL (PostgreSQL)
- Seed data examples

Respond with SQL DDL and explanatory notes."""

WIREFRAMES_PROMPT = """You are a UX Designer. Generate detailed wireframe specifications:
- Screen-by-screen layout descriptions
- Component hierarchy and naming
- User interaction flows
- Responsive breakpoints (mobile, tablet, desktop)
- Accessibility requirements (ARIA, keyboard nav)

Describe each screen with enough detail to build from."""

API_CONTRACT_PROMPT = """You are an API Architect. Generate a complete API specification:
- RESTful endpoints with HTTP methods
- Request body schemas (JSON)
- Response schemas with status codes
- Authentication/authorization requirements
- Rate limiting and pagination strategy
- Error response format

Use OpenAPI 3.0 YAML format."""

FRONTEND_PROMPT = """You are a Senior Front-End Engineer. Generate production-ready front-end code:
- React components with TypeScript
- Routing setup (React Router)
- State management (hooks, context, or Zustand)
- API integration layer (fetch/axios with error handling)
- Responsive CSS (Tailwind)
- Loading states, error boundaries

Write complete, runnable code files."""

BACKEND_PROMPT = """You are a Senior Back-End Engineer. Generate production-ready server code:
- Express/Fastify route handlers
- Input validation middleware (Zod/Joi)
- Database queries (Drizzle/Prisma ORM)
- Error handling middleware
- Request logging
- Environment configuration

Write complete, runnable code files."""

AUTH_PROMPT = """You are a Security Engineer. Implement authentication and authorization:
- JWT token generation and validation
- Password hashing (bcrypt/argon2)
- Role-based access control (RBAC)
- Session management
- CORS configuration
- Rate limiting
- Input sanitization (XSS, SQL injection prevention)
- CSRF protection

Write complete, security-hardened code."""

PAYMENTS_PROMPT = """You are a Payments Integration Specialist. Implement payment processing:
- Stripe/Square SDK integration
- Checkout session creation
- Webhook handler for payment events
- Subscription management (if applicable)
- Invoice generation
- Refund handling
- PCI compliance notes
- Error recovery and idempotency

Write complete integration code with webhook verification."""

TESTS_PROMPT = """You are a QA Engineer. Generate comprehensive test suites:
- Unit tests for business logic (Vitest/Jest)
- API integration tests (supertest)
- Component tests (React Testing Library)
- E2E test scenarios (Playwright)
- Test fixtures and factories
- Coverage targets and CI integration

Write complete, runnable test files."""

DEPLOY_PROMPT = """You are a DevOps Engineer. Generate deployment configuration:
- Dockerfile (multi-stage build)
- docker-compose.yml for local dev
- CI/CD pipeline (GitHub Actions)
- Environment variable management
- Health check endpoints
- Logging and monitoring setup
- Production deployment checklist

Write complete, copy-paste-ready config files."""


NODE_TEMPLATES: tuple[NodeTemplate, ...] = (
    NodeTemplate(
        id="requirements",
        label="Requirements",
        tier=ModelTier.MID,
        description="User stories & acceptance criteria",
        default_prompt=REQUIREMENTS_PROMPT,
    ),
    NodeTemplate(
        id="db_schema",
        label="DB Schema",
        tier=ModelTier.MID,
        description="Tables, relationships, migrations",
        default_prompt=DB_SCHEMA_PROMPT,
    ),
    NodeTemplate(
        id="wireframes",
        label="UI Wireframes",
        tier=ModelTier.MID,
        description="Component layout & UX specs",
        default_prompt=WIREFRAMES_PROMPT,
    ),
    NodeTemplate(
        id="api_contract",
        label="API Contract",
        tier=ModelTier.MID,
        description="Endpoints, request/response shapes",
        default_prompt=API_CONTRACT_PROMPT,
    ),
    NodeTemplate(
        id="frontend",
        label="Front-End Code",
        tier=ModelTier.FRONTIER,
        description="React/Vue components & routing",
        default_prompt=FRONTEND_PROMPT,
    ),
    NodeTemplate(
        id="backend",
        label="Back-End Code",
        tier=ModelTier.FRONTIER,
        description="Server routes, middleware, logic",
        default_prompt=BACKEND_PROMPT,
    ),
    NodeTemplate(
        id="auth",
        label="Auth & Security",
        tier=ModelTier.FRONTIER,
        description="Auth flows, JWT, RBAC",
        default_prompt=AUTH_PROMPT,
    ),
    NodeTemplate(
        id="payments",
        label="Payments",
        tier=ModelTier.FRONTIER,
        description="Stripe/Square integration",
        default_prompt=PAYMENTS_PROMPT,
    ),
    NodeTemplate(
        id="tests",
        label="Tests",
        tier=ModelTier.MID,
        description="Unit & integration tests",
        default_prompt=TESTS_PROMPT,
    ),
    NodeTemplate(
        id="deploy",
        label="Deployment",
        tier=ModelTier.LOCAL,
        description="Docker, CI/CD, env config",
        default_prompt=DEPLOY_PROMPT,
    ),
)


PIPELINE_TEMPLATES: tuple[PipelineTemplate, ...] = (
    PipelineTemplate(
        id="fullstack",
        label="Full-Stack App",
        description="Complete app with auth, payments, testing",
        nodes=[
            "requirements",
            "db_schema",
            "wireframes",
            "api_contract",
            "frontend",
            "backend",
            "auth",
            "payments",
            "tests",
            "deploy",
        ],
        edges=[
            ("requirements", "api_contract"),
            ("requirements", "wireframes"),
            ("db_schema", "api_contract"),
            ("db_schema", "backend"),
            ("wireframes", "frontend"),
            ("api_contract", "frontend"),
            ("api_contract", "backend"),
            ("backend", "auth"),
            ("backend", "payments"),
            ("frontend", "tests"),
            ("backend", "tests"),
            ("tests", "deploy"),
        ],
    ),
    PipelineTemplate(
        id="landing",
        label="Landing Page",
        description="5-node pipeline for marketing sites",
        nodes=["requirements", "wireframes", "frontend", "tests", "deploy"],
        edges=[
            ("requirements", "wireframes"),
            ("wireframes", "frontend"),
            ("frontend", "tests"),
            ("tests", "deploy"),
        ],
    ),
    PipelineTemplate(
        id="api_service",
        label="API Service",
        description="Backend-focused: schema, API, auth, tests",
        nodes=["requirements", "db_schema", "api_contract", "backend", "auth", "tests", "deploy"],
        edges=[
            ("requirements", "db_schema"),
            ("requirements", "api_contract"),
            ("db_schema", "backend"),
            ("api_contract", "backend"),
            ("backend", "auth"),
            ("backend", "tests"),
            ("auth", "tests"),
            ("tests", "deploy"),
        ],
    ),
    PipelineTemplate(
        id="mvp",
        label="Rapid MVP",
        description="Minimal viable: requirements, schema, API, frontend",
        nodes=["requirements", "db_schema", "api_contract", "frontend", "backend"],
        edges=[
            ("requirements", "db_schema"),
            ("requirements", "api_contract"),
            ("db_schema", "backend"),
            ("api_contract", "frontend"),
            ("api_contract", "backend"),
        ],
    ),
)


class TemplateRegistry:
    """Read-only lookup over node and pipeline templates."""

    def __init__(
        self,
        node_templates: tuple[NodeTemplate, ...] | list[NodeTemplate] = NODE_TEMPLATES,
        pipeline_templates: tuple[PipelineTemplate, ...] | list[PipelineTemplate] = PIPELINE_TEMPLATES,
    ) -> None:
        self._nodes = {template.id: template for template in node_templates}
        self._pipelines = {template.id: template for template in pipeline_templates}

    def get(self, template_id: str) -> NodeTemplate | None:
        """Return the node template with this id, or None."""
        return self._nodes.get(template_id)

    def get_pipeline(self, pipeline_id: str) -> PipelineTemplate | None:
        return self._pipelines.get(pipeline_id)

    def list_templates(self) -> list[NodeTemplate]:
        return list(self._nodes.values())

    def list_pipelines(self) -> list[PipelineTemplate]:
        return list(self._pipelines.values())
